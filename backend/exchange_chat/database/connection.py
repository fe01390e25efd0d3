import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from exchange_chat.config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client, _db
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    _db = _client[settings.mongo_db_name]
    await ensure_indexes(_db)
    logger.info("Connected to MongoDB database %s", settings.mongo_db_name)
    return _db


async def close_mongo_connection() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None


def get_database() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("MongoDB is not connected")
    return _db


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    conversations = db["conversations"]
    await conversations.create_index([("participants", ASCENDING), ("updated_at", DESCENDING)])
    await conversations.create_index([("pair_key", ASCENDING), ("item_id", ASCENDING)])
    await conversations.create_index([("scope_key", ASCENDING)], unique=True)

    messages = db["messages"]
    await messages.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)])
    await messages.create_index([("conversation_id", ASCENDING), ("read", ASCENDING)])

    exchanges = db["exchanges"]
    await exchanges.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
    await exchanges.create_index([("business_id", ASCENDING), ("item_id", ASCENDING), ("item_type", ASCENDING)])
