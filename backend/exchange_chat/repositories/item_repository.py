import logging
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from exchange_chat.models.item import ItemPreview
from exchange_chat.utils.errors import TransientIO, ValidationFailed, translate_store_errors

logger = logging.getLogger(__name__)


# item type -> collection owned by the listing registries
ITEM_COLLECTIONS = {
    "post": "posts",
    "event": "events",
    "promotion": "promotions",
    "resource": "resources",
    "business": "businesses",
}


def _item_key(item_id: str):
    # registries key documents by ObjectId, older ones by plain strings
    try:
        return ObjectId(item_id)
    except (InvalidId, TypeError):
        return item_id


class ItemRepository:
    """Read-only view of the listing registries: conversation previews and business ownership."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    def _collection(self, item_type: str):
        name = ITEM_COLLECTIONS.get(item_type)
        if name is None:
            raise ValidationFailed(f"Unknown item type {item_type!r}")
        return self._db[name]

    @translate_store_errors
    async def find(self, item_type: str, item_id: str) -> Optional[dict]:
        return await self._collection(item_type).find_one(
            {"_id": _item_key(item_id)},
            projection={"title": 1, "name": 1, "primary_image_key": 1, "photo_urls": 1},
        )

    @translate_store_errors
    async def business_owner(self, business_id: str) -> Optional[str]:
        """Owner of a business, or None when the business does not exist."""
        doc = await self._collection("business").find_one({"_id": _item_key(business_id)}, projection={"owner_id": 1})
        return doc.get("owner_id") if doc else None

    async def preview(
        self,
        item_type: str,
        item_id: str,
        fallback_title: Optional[str] = None,
        fallback_image_key: Optional[str] = None,
    ) -> ItemPreview:
        """Return ``{id, title, primary_image_key}`` for an item.

        Deleted or unreadable items produce an ``available=False`` placeholder
        built from the snapshot stored on the conversation.
        """
        try:
            doc = await self.find(item_type, item_id)
        except TransientIO:
            logger.warning("Item %s/%s could not be read, rendering placeholder", item_type, item_id)
            doc = None
        if not doc:
            return ItemPreview(
                id=item_id,
                item_type=item_type,
                title=fallback_title,
                primary_image_key=fallback_image_key,
                available=False,
            )
        photos = doc.get("photo_urls") or []
        return ItemPreview(
            id=item_id,
            item_type=item_type,
            title=doc.get("title") or doc.get("name") or fallback_title,
            primary_image_key=doc.get("primary_image_key") or (photos[0] if photos else fallback_image_key),
            available=True,
        )
