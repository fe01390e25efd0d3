import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from exchange_chat.services.chat_service import ChatService
from exchange_chat.utils.dependencies import get_chat_service
from exchange_chat.utils.errors import ChatError, NotFound, Unauthenticated
from exchange_chat.utils.security import decode_access_token
from exchange_chat.utils.websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])
manager = ConnectionManager()


async def _authenticate(websocket: WebSocket) -> Optional[str]:
    # JWT protects the socket: token comes as ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return None
    try:
        return decode_access_token(token)["sub"]
    except Unauthenticated:
        await websocket.close(code=4401)
        return None


async def _pump(websocket: WebSocket, stream, frame_type: str, shape) -> None:
    async for item in stream:
        await websocket.send_json(jsonable_encoder({"type": frame_type, **shape(item)}))


async def _serve(websocket: WebSocket, user_id: str, stream, frame_type: str, shape, service: ChatService, conversation_id: Optional[str] = None) -> None:
    await manager.connect(user_id, websocket)
    pump = asyncio.create_task(_pump(websocket, stream, frame_type, shape))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid message payload"})
                continue
            if conversation_id is None or not isinstance(msg, dict):
                continue
            try:
                if msg.get("type") == "read":
                    updated = await service.mark_read(user_id, conversation_id)
                    await websocket.send_json({"type": "read", "updated": updated})
                elif msg.get("type", "message") == "message":
                    saved = await service.send_message(user_id, conversation_id, msg.get("text", ""), msg.get("media_urls"))
                    await websocket.send_json(jsonable_encoder({
                        "type": "ack",
                        "message_id": saved["_id"],
                        "seq": saved["seq"],
                        "client_message_id": msg.get("client_message_id"),
                    }))
            except ChatError as exc:
                # writes are never retried here; the client decides
                await websocket.send_json({"type": "error", "client_message_id": msg.get("client_message_id"), **exc.to_dict()})
    except WebSocketDisconnect:
        logger.info("Socket closed for %s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        await stream.cancel()


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str, service: ChatService = Depends(get_chat_service)):
    user_id = await _authenticate(websocket)
    if user_id is None:
        return
    try:
        since = int(websocket.query_params.get("since", "0"))
    except ValueError:
        await websocket.close(code=4400)
        return
    try:
        stream = await service.watch_messages(user_id, conversation_id, since)
    except NotFound:
        await websocket.close(code=4404)
        return
    except ChatError:
        await websocket.close(code=4403)
        return
    await _serve(websocket, user_id, stream, "message", lambda m: {"message": service.present_message(m)}, service, conversation_id)


@router.websocket("/inbox")
async def inbox_socket(websocket: WebSocket, service: ChatService = Depends(get_chat_service)):
    user_id = await _authenticate(websocket)
    if user_id is None:
        return
    stream = service.watch_conversations(user_id)

    def shape(items):
        return {"items": [{**it, "unread": int((it.get("unread_count") or {}).get(user_id, 0))} for it in items]}

    await _serve(websocket, user_id, stream, "conversations", shape, service)
