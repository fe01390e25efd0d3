import logging
import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "exchange_chat"
    redis_url: Optional[str] = None  # unset -> in-process bus, single worker only

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    media_bucket: str = "media"
    media_url_ttl_seconds: int = 3600
    max_media_files: int = 10

    # live streams
    stream_poll_seconds: float = 15.0
    resubscribe_backoff_seconds: float = 1.0
    seq_gap_grace_seconds: float = 2.0

    exchange_max_days_ahead: int = 14
    log_level: str = "INFO"


_ENV_KEYS = {
    "mongo_url": "MONGO_URL",
    "mongo_db_name": "MONGO_DB_NAME",
    "redis_url": "REDIS_URL",
    "jwt_secret": "JWT_SECRET",
    "jwt_algorithm": "JWT_ALGORITHM",
    "media_bucket": "MEDIA_BUCKET",
    "media_url_ttl_seconds": "MEDIA_URL_TTL_SECONDS",
    "max_media_files": "MAX_MEDIA_FILES",
    "stream_poll_seconds": "STREAM_POLL_SECONDS",
    "resubscribe_backoff_seconds": "RESUBSCRIBE_BACKOFF_SECONDS",
    "seq_gap_grace_seconds": "SEQ_GAP_GRACE_SECONDS",
    "exchange_max_days_ahead": "EXCHANGE_MAX_DAYS_AHEAD",
    "log_level": "LOG_LEVEL",
}


def load_settings() -> Settings:
    values = {}
    for field, env in _ENV_KEYS.items():
        raw = os.getenv(env)
        if raw is not None and raw != "":
            values[field] = raw
    settings = Settings(**values)
    if settings.jwt_secret == "change-me":
        logger.warning("JWT_SECRET is not set, using the development default")
    return settings


@lru_cache
def get_settings() -> Settings:
    return load_settings()
