import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from exchange_chat.utils.errors import NotFound, ValidationFailed, translate_store_errors
from exchange_chat.utils.object_ids import stringify_id, to_object_id


def pair_key(user_a: str, user_b: str) -> str:
    # JSON keeps the key unambiguous whatever characters the ids contain
    return json.dumps(sorted([user_a, user_b]))


def scope_key(user_a: str, user_b: str, item_id: Optional[str]) -> str:
    return json.dumps(sorted([user_a, user_b]) + [item_id])


def as_utc(value: datetime) -> datetime:
    # mongomock and non tz_aware clients hand back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _present(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stringify ids and expose the stored counters as ``unread_count`` (user_id -> count)."""
    if doc is None:
        return None
    stringify_id(doc)
    doc["unread_count"] = {entry["user_id"]: int(entry["count"]) for entry in doc.get("unread") or []}
    return doc


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    @translate_store_errors
    async def get(self, conversation_id) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"_id": to_object_id(conversation_id, "Conversation")})
        return _present(doc)

    @translate_store_errors
    async def get_or_create(
        self,
        user_a: str,
        user_b: str,
        item_id: Optional[str] = None,
        item_type: Optional[str] = None,
        item_title: Optional[str] = None,
        item_image_key: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Return ``(conversation, created)`` for the pair, optionally scoped to an item.

        An item-scoped conversation wins; otherwise any conversation between the
        two users is reused. A new document is only inserted when both lookups
        miss, through an upsert on ``scope_key`` so concurrent first contacts
        converge on one conversation.
        """
        key = pair_key(user_a, user_b)
        if item_id:
            existing = await self.collection.find_one({"pair_key": key, "item_id": item_id})
            if existing:
                return _present(existing), False
        existing = await self.collection.find_one({"pair_key": key}, sort=[("created_at", ASCENDING)])
        if existing:
            return _present(existing), False

        scope = scope_key(user_a, user_b, item_id)
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "participants": sorted([user_a, user_b]),
            "pair_key": key,
            "scope_key": scope,
            "item_id": item_id,
            "item_type": item_type if item_id else None,
            "item_title": item_title,
            "item_image_key": item_image_key,
            "last_message": None,
            "last_message_seq": 0,
            "message_seq": 0,
            # user ids never become field names
            "unread": [{"user_id": user_id, "count": 0} for user_id in sorted([user_a, user_b])],
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.update_one({"scope_key": scope}, {"$setOnInsert": doc}, upsert=True)
        except DuplicateKeyError:
            result = None
        created = bool(result is not None and result.upserted_id is not None)
        stored = await self.collection.find_one({"scope_key": scope})
        return _present(stored), created

    @translate_store_errors
    async def allocate_seq(self, conversation_id) -> Tuple[int, List[str]]:
        """Hand out the next message sequence number; raises NotFound for unknown ids."""
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id, "Conversation")},
            {"$inc": {"message_seq": 1}},
            projection={"participants": 1, "message_seq": 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound(f"Conversation {conversation_id} not found")
        return int(doc["message_seq"]), list(doc["participants"])

    @translate_store_errors
    async def update_on_new_message(
        self,
        conversation_id,
        seq: int,
        sender_id: str,
        preview: str,
        timestamp: datetime,
        recipients: List[str],
    ) -> None:
        oid = to_object_id(conversation_id, "Conversation")
        snapshot = {
            "last_message": {"text": preview, "sender_id": sender_id, "timestamp": timestamp, "seq": seq},
            "last_message_seq": seq,
            "updated_at": timestamp,
        }
        others = [user_id for user_id in recipients if user_id != sender_id]
        if not others:
            await self.collection.update_one({"_id": oid, "last_message_seq": {"$lt": seq}}, {"$set": snapshot})
            return
        # two participants, so exactly one counter moves
        recipient = others[0]
        # the snapshot only moves forward; a slower concurrent send just bumps the counter
        result = await self.collection.update_one(
            {"_id": oid, "last_message_seq": {"$lt": seq}, "unread.user_id": recipient},
            {"$set": snapshot, "$inc": {"unread.$.count": 1}},
        )
        if result.matched_count == 0:
            await self.collection.update_one(
                {"_id": oid, "unread.user_id": recipient},
                {"$inc": {"unread.$.count": 1}},
            )

    @translate_store_errors
    async def reset_unread(self, conversation_id, user_id: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id, "Conversation"), "unread.user_id": user_id},
            {"$set": {"unread.$.count": 0}},
        )

    @translate_store_errors
    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:object_id_hex
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
            except ValueError as exc:
                raise ValidationFailed("Malformed cursor") from exc
            query["$or"] = [
                {"updated_at": {"$lt": ts}},
                {"updated_at": ts, "_id": {"$lt": to_object_id(oid_hex, "Cursor")}},
            ]

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        for it in items:
            _present(it)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(as_utc(last["updated_at"]).timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        return items, next_cursor

    @translate_store_errors
    async def unread_for_user(self, user_id: str) -> Dict[str, int]:
        cur = self.collection.find({"participants": user_id}, projection={"unread": 1})
        counters: Dict[str, int] = {}
        async for doc in cur:
            counters[str(doc["_id"])] = _present(doc)["unread_count"].get(user_id, 0)
        return counters
