from bson import ObjectId
from bson.errors import InvalidId

from exchange_chat.utils.errors import NotFound


def to_object_id(value, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise NotFound(f"{what} {value} not found") from exc


def stringify_id(doc: dict | None, *fields: str) -> dict | None:
    """Normalize ``_id`` (and any extra ObjectId fields) to strings for the API layer."""
    if doc is None:
        return None
    for key in ("_id",) + fields:
        if doc.get(key) is not None:
            doc[key] = str(doc[key])
    return doc
