from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from exchange_chat.services.chat_service import ChatService
from exchange_chat.utils.dependencies import get_chat_service
from exchange_chat.utils.security import verify_media_signature


router = APIRouter(prefix="/media", tags=["media"])


@router.get("/{object_key:path}")
async def download_media(object_key: str, sig: str = Query(...), service: ChatService = Depends(get_chat_service)):
    """Serve a blob behind a signed, expiring link produced by ``resolve_url``."""
    verify_media_signature(object_key, sig)
    data, content_type = await service.blob_store.download(object_key)
    return Response(content=data, media_type=content_type or "application/octet-stream")
