from datetime import datetime, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from exchange_chat.config import Settings
from exchange_chat.database.connection import ensure_indexes
from exchange_chat.repositories.conversation_repository import ConversationRepository
from exchange_chat.repositories.exchange_repository import ExchangeRepository
from exchange_chat.repositories.item_repository import ItemRepository
from exchange_chat.repositories.message_repository import MessageRepository
from exchange_chat.services.chat_service import ChatService
from exchange_chat.services.exchange_service import ExchangeService
from exchange_chat.services.message_service import MessageService
from exchange_chat.services.subscriptions import SubscriptionHub
from exchange_chat.utils.errors import MediaUploadFailed, NotFound
from exchange_chat.utils.realtime_bus import LocalBus
from exchange_chat.utils.security import sign_media_key


USER_A = "user-a"
USER_B = "user-b"
USER_C = "user-c"

# fixed "now" for exchange date validation
NOW = datetime(2025, 3, 30, 9, 0, tzinfo=timezone.utc)


class FakeBlobStore:
    """Records uploads; names listed in ``fail_on`` raise like a broken upload."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.stored = {}

    async def upload(self, data, key, content_type=None):
        if any(key.endswith(name) for name in self.fail_on):
            raise MediaUploadFailed(f"Upload of {key} failed")
        self.stored[key] = (data, content_type)
        return key

    async def download(self, key):
        if key not in self.stored:
            raise NotFound(f"Media {key} not found")
        return self.stored[key]

    def resolve_url(self, key):
        return f"/media/{key}?sig={sign_media_key(key)}"


@pytest.fixture
def settings():
    return Settings(
        stream_poll_seconds=0.2,
        resubscribe_backoff_seconds=0.01,
        seq_gap_grace_seconds=0.3,
    )


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["exchange_chat_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


def build_service(db, bus, settings, blob_store=None) -> ChatService:
    message_repo = MessageRepository(db)
    conversation_repo = ConversationRepository(db)
    message_service = MessageService(message_repo, conversation_repo, bus)
    exchange_service = ExchangeService(
        ExchangeRepository(db), conversation_repo, message_service, max_days_ahead=14, clock=lambda: NOW
    )
    return ChatService(
        message_repo,
        conversation_repo,
        ItemRepository(db),
        message_service,
        exchange_service,
        SubscriptionHub(message_repo, conversation_repo, bus, settings),
        blob_store=blob_store,
        max_media_files=3,
    )


@pytest.fixture
def service(db, bus, settings, blob_store):
    return build_service(db, bus, settings, blob_store)


@pytest.fixture
async def conversation(service):
    return await service.open_conversation(USER_A, USER_B)
