import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from exchange_chat.repositories.conversation_repository import ConversationRepository
from exchange_chat.repositories.message_repository import MessageRepository
from exchange_chat.utils.errors import NotFound, TransientIO, Unauthorized, ValidationFailed
from exchange_chat.utils.realtime_bus import conversation_channel, user_channel

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


class MessageService:
    """Writes messages and announces them on the realtime bus."""

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository, bus) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._bus = bus

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        media_urls: Optional[List[str]] = None,
        kind: str = "plain",
        exchange_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        media_urls = list(media_urls or [])
        text = (text or "").strip()
        if not text and not media_urls:
            raise ValidationFailed("Message content cannot be empty")

        conversation = await self._conversation_repo.get(conversation_id)
        if not conversation:
            raise NotFound(f"Conversation {conversation_id} not found")
        # participants never change, so checking before allocating is race free
        if sender_id not in conversation["participants"]:
            raise Unauthorized("Sender is not a participant of this conversation")
        seq, participants = await self._conversation_repo.allocate_seq(conversation_id)

        created_at = datetime.now(timezone.utc)
        saved = await self._message_repo.save_message(
            conversation_id=conversation_id,
            seq=seq,
            sender_id=sender_id,
            text=text,
            media_urls=media_urls,
            created_at=created_at,
            kind=kind,
            exchange_id=exchange_id,
        )
        preview = text[:PREVIEW_LENGTH] if text else "Sent media"
        await self._conversation_repo.update_on_new_message(
            conversation_id, seq, sender_id, preview, created_at, participants
        )
        logger.info("Message %s (seq %d) sent in conversation %s", saved["_id"], seq, conversation_id)

        await self.announce(conversation_channel(conversation_id), {"type": "message", "conversation_id": conversation_id, "seq": seq})
        await self.announce_conversation(conversation_id, participants)
        return saved

    async def announce_conversation(self, conversation_id: str, participants: Iterable[str]) -> None:
        for user_id in participants:
            await self.announce(user_channel(user_id), {"type": "conversation", "conversation_id": conversation_id})

    async def announce(self, channel: str, event: Dict[str, Any]) -> None:
        # the write is already durable; live streams re-poll the store on their own
        try:
            await self._bus.publish(channel, json.dumps(event))
        except TransientIO:
            logger.warning("Could not publish %s on %s", event.get("type"), channel)
