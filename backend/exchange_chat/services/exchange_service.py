import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from exchange_chat.repositories.conversation_repository import ConversationRepository, as_utc
from exchange_chat.repositories.exchange_repository import ExchangeRepository
from exchange_chat.services.locations import resolve_location
from exchange_chat.services.message_service import MessageService
from exchange_chat.services.references import EXCHANGE_MARKER
from exchange_chat.utils.errors import InvalidState, NotFound, Unauthorized, ValidationFailed

logger = logging.getLogger(__name__)


EXCHANGE_TYPES = ("pickup", "delivery")
DECISIONS = {"accept": "accepted", "reject": "rejected"}

# status -> statuses it may move to; rejected and completed are terminal
TRANSITIONS: Dict[str, tuple] = {
    "pending": ("accepted", "rejected"),
    "accepted": ("completed",),
    "rejected": (),
    "completed": (),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_when(value: datetime) -> str:
    return value.strftime("%a, %b %d, %I:%M %p")


class ExchangeService:
    """Exchange proposals negotiated inside a conversation.

    Every transition is a compare-and-set on the stored status, so an illegal
    call fails with ``InvalidState`` and leaves nothing behind, whatever the
    client showed. Each successful call is followed by a companion message in
    the conversation. ``announced_status`` records the last status whose
    message landed; when that send fails, repeating the same call posts the
    missing message instead of failing on the already applied transition.
    """

    def __init__(
        self,
        exchange_repo: ExchangeRepository,
        conversation_repo: ConversationRepository,
        message_service: MessageService,
        max_days_ahead: int = 14,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._exchange_repo = exchange_repo
        self._conversation_repo = conversation_repo
        self._message_service = message_service
        self._max_days_ahead = max_days_ahead
        self._clock = clock

    async def propose(
        self,
        conversation_id: str,
        created_by: str,
        exchange_type: str,
        location: Mapping[str, Any],
        date_time: datetime,
        item_id: Optional[str] = None,
        business_id: Optional[str] = None,
        item_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a pending proposal and post its card in the conversation.

        Retrying after the companion message failed resumes the stored proposal
        instead of creating a second one.
        """
        if exchange_type not in EXCHANGE_TYPES:
            raise ValidationFailed(f"Exchange type must be one of {', '.join(EXCHANGE_TYPES)}")
        conversation = await self._conversation_for(conversation_id, created_by)
        place = resolve_location(location)
        when = self._check_date(date_time)
        fields = {
            "conversation_id": conversation_id,
            "item_id": item_id or conversation.get("item_id"),
            "created_by": created_by,
            "exchange_type": exchange_type,
            "location": place,
            "date_time": when,
            "business_id": business_id,
            "item_type": item_type or conversation.get("item_type"),
        }

        exchange = await self._unannounced_match(fields)
        if exchange is None:
            now = self._clock()
            exchange = await self._exchange_repo.create(
                {**fields, "status": "pending", "announced_status": None, "created_at": now, "updated_at": now}
            )
            logger.info("Exchange %s proposed in conversation %s by %s", exchange["_id"], conversation_id, created_by)
        else:
            logger.info("Resuming unannounced exchange %s in conversation %s", exchange["_id"], conversation_id)
        return await self._announce(exchange, created_by)

    async def respond(self, proposal_id: str, actor_id: str, decision: str) -> Dict[str, Any]:
        if decision not in DECISIONS:
            raise ValidationFailed("Decision must be 'accept' or 'reject'")
        exchange = await self._get_for_participant(proposal_id, actor_id)
        target = DECISIONS[decision]
        if not self._awaiting_announcement(exchange, target):
            self._check_transition(exchange, target)
        if exchange["created_by"] == actor_id:
            raise Unauthorized("Only the other participant can respond to a proposal")
        if exchange["status"] != target:
            exchange = await self._move(exchange, target)
        return await self._announce(exchange, actor_id)

    async def complete(self, proposal_id: str, actor_id: str) -> Dict[str, Any]:
        exchange = await self._get_for_participant(proposal_id, actor_id)
        if not self._awaiting_announcement(exchange, "completed"):
            self._check_transition(exchange, "completed")
            exchange = await self._move(exchange, "completed")
        return await self._announce(exchange, actor_id)

    async def get(self, proposal_id: str, user_id: str) -> Dict[str, Any]:
        return await self._get_for_participant(proposal_id, user_id)

    async def list_for_conversation(self, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
        await self._conversation_for(conversation_id, user_id)
        return await self._exchange_repo.list_for_conversation(conversation_id)

    async def release_promotion(self, business_id: str, item_id: str, item_type: str) -> int:
        """Unlink proposals from a promotion that is being removed; the proposals stay readable."""
        linked = await self._exchange_repo.find_for_promotion(business_id, item_id, item_type)
        if not linked:
            return 0
        count = await self._exchange_repo.detach_promotion(business_id, item_id, item_type)
        logger.info("Detached %d exchanges from promotion %s/%s/%s", count, business_id, item_type, item_id)
        return count

    async def _conversation_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if not conversation:
            raise NotFound(f"Conversation {conversation_id} not found")
        if user_id not in conversation["participants"]:
            raise Unauthorized("Not a participant of this conversation")
        return conversation

    async def _get_for_participant(self, proposal_id: str, user_id: str) -> Dict[str, Any]:
        exchange = await self._exchange_repo.get(proposal_id)
        if not exchange:
            raise NotFound(f"Exchange {proposal_id} not found")
        await self._conversation_for(exchange["conversation_id"], user_id)
        return exchange

    async def _announce(self, exchange: Dict[str, Any], actor_id: str) -> Dict[str, Any]:
        status = exchange["status"]
        text = self._companion_text(exchange)
        if status == "pending":
            await self._message_service.send(
                exchange["conversation_id"], actor_id, text, kind="exchange_reference", exchange_id=exchange["_id"]
            )
        else:
            await self._message_service.send(exchange["conversation_id"], actor_id, text)
        await self._exchange_repo.mark_announced(exchange["_id"], status)
        exchange["announced_status"] = status
        return exchange

    @staticmethod
    def _companion_text(exchange: Mapping[str, Any]) -> str:
        exchange_type = exchange["exchange_type"]
        status = exchange["status"]
        if status == "pending":
            return (
                f"I've suggested a {exchange_type} at {exchange['location']['name']} "
                f"on {format_when(as_utc(exchange['date_time']))}. {EXCHANGE_MARKER} {exchange['_id']}"
            )
        if status == "accepted":
            return f"I've accepted the {exchange_type} arrangement."
        if status == "rejected":
            return f"I can't make the proposed {exchange_type} arrangement. Let's find another time."
        return f"I've completed the {exchange_type}. Thank you!"

    @staticmethod
    def _awaiting_announcement(exchange: Mapping[str, Any], status: str) -> bool:
        # documents written before announcements were tracked count as announced
        return (
            exchange["status"] == status
            and "announced_status" in exchange
            and exchange["announced_status"] != status
        )

    async def _unannounced_match(self, fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        candidates = await self._exchange_repo.find_unannounced(fields["conversation_id"], fields["created_by"])
        for candidate in candidates:
            same = all(candidate.get(key) == fields[key] for key in ("exchange_type", "location", "item_id", "business_id"))
            # the store keeps datetimes to the millisecond
            if same and abs(as_utc(candidate["date_time"]) - fields["date_time"]) < timedelta(milliseconds=1):
                return candidate
        return None

    @staticmethod
    def _check_transition(exchange: Mapping[str, Any], target: str) -> None:
        status = exchange["status"]
        if target not in TRANSITIONS.get(status, ()):
            raise InvalidState(f"Cannot move exchange from {status} to {target}")

    async def _move(self, exchange: Mapping[str, Any], target: str) -> Dict[str, Any]:
        updated = await self._exchange_repo.transition(exchange["_id"], exchange["status"], target)
        if updated is None:
            # lost a race with another transition
            raise InvalidState(f"Exchange {exchange['_id']} is no longer {exchange['status']}")
        logger.info("Exchange %s: %s -> %s", exchange["_id"], exchange["status"], target)
        return updated

    def _check_date(self, date_time: datetime) -> datetime:
        if date_time.tzinfo is None:
            date_time = date_time.replace(tzinfo=timezone.utc)
        now = self._clock()
        earliest = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if date_time < earliest:
            raise ValidationFailed("Exchange date cannot be in the past")
        if date_time > now + timedelta(days=self._max_days_ahead):
            raise ValidationFailed(f"Exchange date must be within {self._max_days_ahead} days")
        return date_time
