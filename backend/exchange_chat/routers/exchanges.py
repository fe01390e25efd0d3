from fastapi import APIRouter, Depends

from exchange_chat.config import get_settings
from exchange_chat.schemas.chat import PromotionRef, ProposeExchange, RespondExchange
from exchange_chat.services.chat_service import ChatService
from exchange_chat.services.exchange_service import EXCHANGE_TYPES, ExchangeService
from exchange_chat.services.locations import SAFE_LOCATIONS, time_slots
from exchange_chat.utils.dependencies import get_chat_service, get_current_user, get_exchange_service


router = APIRouter(tags=["exchange"])


@router.get("/exchanges/options")
async def exchange_options():
    """Choices offered when arranging an exchange."""
    return {
        "exchange_types": list(EXCHANGE_TYPES),
        "safe_locations": SAFE_LOCATIONS,
        "time_slots": time_slots(),
        "max_days_ahead": get_settings().exchange_max_days_ahead,
    }


@router.post("/conversations/{conversation_id}/exchanges", status_code=201)
async def propose_exchange(conversation_id: str, body: ProposeExchange, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    exchange = await service.propose_exchange(
        current_user["_id"],
        conversation_id,
        body.exchange_type,
        body.location.model_dump(),
        body.date_time,
        item_id=body.item_id,
        business_id=body.business_id,
        item_type=body.item_type,
    )
    return {"exchange": exchange}


@router.get("/conversations/{conversation_id}/exchanges")
async def list_exchanges(conversation_id: str, current_user: dict = Depends(get_current_user), service: ExchangeService = Depends(get_exchange_service)):
    return {"items": await service.list_for_conversation(conversation_id, current_user["_id"])}


@router.get("/exchanges/{exchange_id}")
async def get_exchange(exchange_id: str, current_user: dict = Depends(get_current_user), service: ExchangeService = Depends(get_exchange_service)):
    return {"exchange": await service.get(exchange_id, current_user["_id"])}


@router.post("/exchanges/{exchange_id}/respond")
async def respond_exchange(exchange_id: str, body: RespondExchange, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"exchange": await service.respond_exchange(current_user["_id"], exchange_id, body.decision)}


@router.post("/exchanges/{exchange_id}/complete")
async def complete_exchange(exchange_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"exchange": await service.complete_exchange(current_user["_id"], exchange_id)}


@router.post("/exchanges/promotions/release")
async def release_promotion(body: PromotionRef, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    # called by the business owner when a promotion is removed
    count = await service.release_promotion(current_user["_id"], body.business_id, body.item_id, body.item_type)
    return {"updated": count}
