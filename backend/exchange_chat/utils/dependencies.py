from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from exchange_chat.config import get_settings
from exchange_chat.database.connection import mongo_db_dependency
from exchange_chat.repositories.conversation_repository import ConversationRepository
from exchange_chat.repositories.exchange_repository import ExchangeRepository
from exchange_chat.repositories.item_repository import ItemRepository
from exchange_chat.repositories.message_repository import MessageRepository
from exchange_chat.services.chat_service import ChatService
from exchange_chat.services.exchange_service import ExchangeService
from exchange_chat.services.message_service import MessageService
from exchange_chat.services.subscriptions import SubscriptionHub
from exchange_chat.utils.blob_store import GridFSBlobStore
from exchange_chat.utils.errors import Unauthenticated
from exchange_chat.utils.realtime_bus import get_bus
from exchange_chat.utils.security import decode_access_token


_bearer = HTTPBearer(auto_error=False)


async def get_current_user(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> dict:
    if credentials is None:
        raise Unauthenticated("Not authenticated")
    payload = decode_access_token(credentials.credentials)
    return {"_id": payload["sub"]}


def build_chat_service(db, bus) -> ChatService:
    settings = get_settings()
    message_repo = MessageRepository(db)
    conversation_repo = ConversationRepository(db)
    message_service = MessageService(message_repo, conversation_repo, bus)
    exchange_service = ExchangeService(
        ExchangeRepository(db),
        conversation_repo,
        message_service,
        max_days_ahead=settings.exchange_max_days_ahead,
    )
    return ChatService(
        message_repo,
        conversation_repo,
        ItemRepository(db),
        message_service,
        exchange_service,
        SubscriptionHub(message_repo, conversation_repo, bus, settings),
        blob_store=GridFSBlobStore(db, settings.media_bucket),
        max_media_files=settings.max_media_files,
    )


async def get_chat_service(db=Depends(mongo_db_dependency)) -> ChatService:
    return build_chat_service(db, await get_bus())


async def get_exchange_service(db=Depends(mongo_db_dependency)) -> ExchangeService:
    service = build_chat_service(db, await get_bus())
    return service.exchanges
