import logging
import os
import re
import uuid
from typing import Optional, Tuple

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket
from pymongo.errors import PyMongoError

from exchange_chat.utils.errors import MediaUploadFailed, NotFound, TransientIO
from exchange_chat.utils.security import sign_media_key

logger = logging.getLogger(__name__)


def create_unique_file_name(original_name: str) -> str:
    """Object key for an upload: ``chat/<uuid>-<basename>``."""
    base = re.sub(r"[^A-Za-z0-9._-]", "_", os.path.basename(original_name or "")) or "file"
    return f"chat/{uuid.uuid4().hex}-{base}"


class GridFSBlobStore:
    """Blob store on top of the same MongoDB, addressed by object key."""

    def __init__(self, db: AsyncIOMotorDatabase, bucket_name: str = "media") -> None:
        self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def upload(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        try:
            await self._bucket.upload_from_stream(key, data, metadata={"content_type": content_type})
        except PyMongoError as exc:
            raise MediaUploadFailed(f"Upload of {key} failed") from exc
        logger.info("Stored blob %s (%d bytes)", key, len(data))
        return key

    async def download(self, key: str) -> Tuple[bytes, Optional[str]]:
        try:
            grid_out = await self._bucket.open_download_stream_by_name(key)
            data = await grid_out.read()
        except NoFile as exc:
            raise NotFound(f"Media {key} not found") from exc
        except PyMongoError as exc:
            raise TransientIO("Media storage unavailable") from exc
        metadata = grid_out.metadata or {}
        return data, metadata.get("content_type")

    def resolve_url(self, key: str) -> str:
        return f"/media/{key}?sig={sign_media_key(key)}"
