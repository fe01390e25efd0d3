from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from exchange_chat.config import get_settings
from exchange_chat.utils.errors import Unauthenticated, Unauthorized


def create_access_token(user_id: str, expires_minutes: int = 60) -> str:
    """Mint a token the way the identity provider does; used by tests and local tooling."""
    settings = get_settings()
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc
    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")
    return payload


def sign_media_key(object_key: str) -> str:
    settings = get_settings()
    payload = {
        "key": object_key,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=settings.media_url_ttl_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_media_signature(object_key: str, signature: str) -> None:
    settings = get_settings()
    try:
        payload = jwt.decode(signature, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("Media link expired") from exc
    except jwt.PyJWTError as exc:
        raise Unauthorized("Invalid media signature") from exc
    if payload.get("key") != object_key:
        raise Unauthorized("Invalid media signature")
