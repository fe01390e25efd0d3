from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from exchange_chat.utils.errors import ValidationFailed, translate_store_errors
from exchange_chat.utils.object_ids import stringify_id, to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    @translate_store_errors
    async def save_message(
        self,
        conversation_id,
        seq: int,
        sender_id: str,
        text: str,
        media_urls: List[str],
        created_at: datetime,
        kind: str = "plain",
        exchange_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "conversation_id": to_object_id(conversation_id, "Conversation"),
            "seq": seq,
            "sender_id": sender_id,
            "text": text,
            "media_urls": list(media_urls),
            "read": False,
            "created_at": created_at,
            "kind": kind,
            "exchange_id": exchange_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return stringify_id(doc, "conversation_id")

    @translate_store_errors
    async def list_after(self, conversation_id, after_seq: int, limit: int = 200) -> List[Dict[str, Any]]:
        """Messages with ``seq > after_seq`` in ascending server order."""
        cur = (
            self.collection.find({"conversation_id": to_object_id(conversation_id, "Conversation"), "seq": {"$gt": after_seq}})
            .sort("seq", ASCENDING)
            .limit(limit)
        )
        items = await cur.to_list(length=limit)
        return [stringify_id(it, "conversation_id") for it in items]

    @translate_store_errors
    async def get_messages_by_conversation(
        self,
        conversation_id,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Newest page first; ``cursor`` is the ``seq`` of the oldest message already shown."""
        query: Dict[str, Any] = {"conversation_id": to_object_id(conversation_id, "Conversation")}
        if cursor:
            try:
                query["seq"] = {"$lt": int(cursor)}
            except ValueError as exc:
                raise ValidationFailed("Malformed cursor") from exc
        cur = self.collection.find(query).sort("seq", DESCENDING).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            stringify_id(it, "conversation_id")
        next_cursor = str(items[-1]["seq"]) if len(items) == limit else None
        # return ascending chronological order for UI
        return list(reversed(items)), next_cursor

    @translate_store_errors
    async def mark_read(self, conversation_id, reader_id: str) -> int:
        """Flag every unread message not authored by ``reader_id`` as read."""
        result = await self.collection.update_many(
            {
                "conversation_id": to_object_id(conversation_id, "Conversation"),
                "sender_id": {"$ne": reader_id},
                "read": False,
            },
            {"$set": {"read": True}},
        )
        return result.modified_count or 0

    @translate_store_errors
    async def count_unread(self, conversation_id, reader_id: str) -> int:
        return await self.collection.count_documents(
            {
                "conversation_id": to_object_id(conversation_id, "Conversation"),
                "sender_id": {"$ne": reader_id},
                "read": False,
            }
        )
