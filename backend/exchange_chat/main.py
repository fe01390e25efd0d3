import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from exchange_chat.config import get_settings
from exchange_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from exchange_chat.routers.chat import manager
from exchange_chat.routers.chat import router as chat_router
from exchange_chat.routers.conversations import router as conversations_router
from exchange_chat.routers.exchanges import router as exchanges_router
from exchange_chat.routers.media import router as media_router
from exchange_chat.utils.errors import ChatError
from exchange_chat.utils.realtime_bus import close_bus, get_bus

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    await get_bus()
    try:
        yield
    finally:
        await manager.close_all()
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Exchange chat", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(conversations_router)
app.include_router(exchanges_router)
app.include_router(chat_router)
app.include_router(media_router)


@app.get("/health")
async def health():

    db = get_database()
    await db.command("ping")
    bus = await get_bus()
    return {"status": "ok", "bus": "redis" if bus.enabled else "in-process"}
