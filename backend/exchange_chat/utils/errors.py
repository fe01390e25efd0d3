import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatError(Exception):
    """Base class for errors surfaced at the API boundary.

    ``status`` is "fail" for client errors and "error" for server side ones;
    ``retryable`` tells the caller whether repeating the same call can succeed.
    """

    status_code = 500
    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.status = "fail" if str(self.status_code).startswith("4") else "error"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotFound(ChatError):
    status_code = 404


class InvalidState(ChatError):
    status_code = 409


class Unauthorized(ChatError):
    status_code = 403


class Unauthenticated(Unauthorized):
    status_code = 401


class ValidationFailed(ChatError):
    status_code = 422


class TransientIO(ChatError):
    status_code = 503
    retryable = True


class MediaUploadFailed(TransientIO):
    pass


def translate_store_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise driver failures of a repository coroutine as ``TransientIO``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as exc:
            logger.warning("store call %s failed: %s", func.__qualname__, exc)
            raise TransientIO("Storage is temporarily unavailable") from exc

    return wrapper
