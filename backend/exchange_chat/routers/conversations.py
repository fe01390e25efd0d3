from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from exchange_chat.schemas.chat import OpenConversation, SendMessage
from exchange_chat.services.chat_service import QUICK_RESPONSES, ChatService
from exchange_chat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("")
async def open_conversation(body: OpenConversation, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation = await service.open_conversation(
        current_user["_id"],
        body.other_user_id,
        item_id=body.item_id,
        item_type=body.item_type,
        item_title=body.item_title,
        item_image_key=body.item_image_key,
    )
    return {"conversation": conversation}


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    return {"items": items, "next_cursor": next_cursor}


@router.get("/unread")
async def unread_badges(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.unread_badges(current_user["_id"])


@router.get("/quick-responses")
async def quick_responses():
    return {"items": QUICK_RESPONSES}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"conversation": await service.get_conversation(current_user["_id"], conversation_id)}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages, next_cursor = await service.get_history(current_user["_id"], conversation_id, limit=limit, cursor=cursor)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(conversation_id: str, body: SendMessage, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    message = await service.send_message(current_user["_id"], conversation_id, body.text, body.media_urls)
    return {"message": message}


@router.post("/{conversation_id}/media", status_code=201)
async def send_media(conversation_id: str, files: List[UploadFile] = File(...), text: str = Form(""), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    uploads = [(f.filename or "file", await f.read(), f.content_type) for f in files]
    message = await service.send_media(current_user["_id"], conversation_id, text, uploads)
    return {"message": message, "media": message["media"]}


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.mark_read(current_user["_id"], conversation_id)
    return {"updated": count}
