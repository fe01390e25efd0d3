from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from exchange_chat.utils.errors import translate_store_errors
from exchange_chat.utils.object_ids import stringify_id, to_object_id


class ExchangeRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["exchanges"]

    @translate_store_errors
    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc["conversation_id"] = to_object_id(doc["conversation_id"], "Conversation")
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return stringify_id(doc, "conversation_id")

    @translate_store_errors
    async def get(self, exchange_id) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"_id": to_object_id(exchange_id, "Exchange")})
        return stringify_id(doc, "conversation_id")

    @translate_store_errors
    async def transition(self, exchange_id, from_status: str, to_status: str) -> Optional[Dict[str, Any]]:
        """Compare-and-set the status; returns None when the proposal was not in ``from_status``."""
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(exchange_id, "Exchange"), "status": from_status},
            {"$set": {"status": to_status, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        return stringify_id(doc, "conversation_id")

    @translate_store_errors
    async def list_for_conversation(self, conversation_id) -> List[Dict[str, Any]]:
        cur = self.collection.find({"conversation_id": to_object_id(conversation_id, "Conversation")}).sort("created_at", DESCENDING)
        items = await cur.to_list(length=None)
        return [stringify_id(it, "conversation_id") for it in items]

    @translate_store_errors
    async def find_for_promotion(self, business_id: str, item_id: str, item_type: str) -> List[Dict[str, Any]]:
        cur = self.collection.find({"business_id": business_id, "item_id": item_id, "item_type": item_type})
        items = await cur.to_list(length=None)
        return [stringify_id(it, "conversation_id") for it in items]

    @translate_store_errors
    async def detach_promotion(self, business_id: str, item_id: str, item_type: str) -> int:
        result = await self.collection.update_many(
            {"business_id": business_id, "item_id": item_id, "item_type": item_type},
            {"$set": {"business_id": None, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count or 0

    @translate_store_errors
    async def mark_announced(self, exchange_id, status: str) -> None:
        """Record that the companion message for ``status`` is in the transcript."""
        await self.collection.update_one(
            {"_id": to_object_id(exchange_id, "Exchange"), "status": status},
            {"$set": {"announced_status": status}},
        )

    @translate_store_errors
    async def find_unannounced(self, conversation_id, created_by: str) -> List[Dict[str, Any]]:
        """Pending proposals whose companion message never made it into the transcript."""
        cur = self.collection.find(
            {
                "conversation_id": to_object_id(conversation_id, "Conversation"),
                "created_by": created_by,
                "status": "pending",
                "announced_status": None,
            }
        ).sort("created_at", DESCENDING)
        items = await cur.to_list(length=None)
        return [stringify_id(it, "conversation_id") for it in items]
