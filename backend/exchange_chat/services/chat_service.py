import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from exchange_chat.repositories.conversation_repository import ConversationRepository
from exchange_chat.repositories.item_repository import ItemRepository
from exchange_chat.repositories.message_repository import MessageRepository
from exchange_chat.services.exchange_service import ExchangeService
from exchange_chat.services.message_service import MessageService
from exchange_chat.services.references import message_reference
from exchange_chat.services.subscriptions import ConversationListStream, MessageStream, SubscriptionHub
from exchange_chat.utils.blob_store import create_unique_file_name
from exchange_chat.utils.errors import MediaUploadFailed, NotFound, TransientIO, Unauthorized, ValidationFailed

logger = logging.getLogger(__name__)


QUICK_RESPONSES = [
    "I'm interested in your post.",
    "Is this still available?",
    "When can we meet?",
    "I can help with that.",
    "Thank you!",
]

# (filename, data, content_type)
Upload = Tuple[str, bytes, Optional[str]]


class ChatService:
    """What the presentation layer calls. Holds no state of its own.

    Every call takes the acting ``user_id`` explicitly.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        item_repo: ItemRepository,
        message_service: MessageService,
        exchange_service: ExchangeService,
        hub: SubscriptionHub,
        blob_store=None,
        max_media_files: int = 10,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._item_repo = item_repo
        self._messages = message_service
        self._exchanges = exchange_service
        self._hub = hub
        self._blob_store = blob_store
        self._max_media_files = max_media_files

    @property
    def exchanges(self) -> ExchangeService:
        return self._exchanges

    @property
    def blob_store(self):
        return self._blob_store

    # conversations

    async def open_conversation(
        self,
        user_id: str,
        other_user_id: str,
        item_id: Optional[str] = None,
        item_type: str = "post",
        item_title: Optional[str] = None,
        item_image_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not other_user_id or other_user_id == user_id:
            raise ValidationFailed("Cannot open a conversation with yourself")
        if item_id and (item_title is None or item_image_key is None):
            preview = await self._item_repo.preview(item_type, item_id, item_title, item_image_key)
            item_title = preview["title"]
            item_image_key = preview["primary_image_key"]
        conversation, created = await self._conversation_repo.get_or_create(
            user_id, other_user_id, item_id, item_type, item_title, item_image_key
        )
        if created:
            logger.info("Conversation %s opened by %s with %s (item %s)", conversation["_id"], user_id, other_user_id, item_id)
            await self._messages.announce_conversation(conversation["_id"], conversation["participants"])
        return await self._decorate(conversation, user_id)

    async def get_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_for(conversation_id, user_id)
        return await self._decorate(conversation, user_id)

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None):
        items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        decorated = await asyncio.gather(*(self._decorate(it, user_id) for it in items))
        return list(decorated), next_cursor

    async def unread_badges(self, user_id: str) -> Dict[str, Any]:
        counters = await self._conversation_repo.unread_for_user(user_id)
        return {"total": sum(counters.values()), "conversations": counters}

    async def mark_read(self, user_id: str, conversation_id: str) -> int:
        conversation = await self._conversation_for(conversation_id, user_id)
        await self._conversation_repo.reset_unread(conversation_id, user_id)
        modified = await self._message_repo.mark_read(conversation_id, user_id)
        await self._messages.announce_conversation(conversation_id, [user_id])
        return modified

    # messages

    async def send_message(self, user_id: str, conversation_id: str, text: str, media_urls: Optional[List[str]] = None) -> Dict[str, Any]:
        saved = await self._messages.send(conversation_id, user_id, text, media_urls)
        return self.present_message(saved)

    async def send_media(self, user_id: str, conversation_id: str, text: str, files: Sequence[Upload]) -> Dict[str, Any]:
        """Upload all files concurrently, then send one message referencing them.

        Any failed upload aborts the send with a single ``MediaUploadFailed``;
        blobs that did upload are left in place.
        """
        if self._blob_store is None:
            raise TransientIO("Media storage is not configured")
        if not files:
            raise ValidationFailed("No files to send")
        if len(files) > self._max_media_files:
            raise ValidationFailed(f"At most {self._max_media_files} files per message")
        await self._conversation_for(conversation_id, user_id)

        uploads = [
            self._blob_store.upload(data, create_unique_file_name(name), content_type)
            for name, data, content_type in files
        ]
        results = await asyncio.gather(*uploads, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning("%d of %d uploads failed for conversation %s", len(failures), len(files), conversation_id)
            raise MediaUploadFailed("Failed to upload file. Please try again.") from failures[0]
        return await self.send_message(user_id, conversation_id, text, list(results))

    async def get_history(self, user_id: str, conversation_id: str, limit: int = 50, cursor: Optional[str] = None):
        await self._conversation_for(conversation_id, user_id)
        items, next_cursor = await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)
        return [self.present_message(it) for it in items], next_cursor

    def media_url(self, object_key: str) -> str:
        if self._blob_store is None:
            raise TransientIO("Media storage is not configured")
        return self._blob_store.resolve_url(object_key)

    # live streams

    async def watch_messages(self, user_id: str, conversation_id: str, since_seq: int = 0) -> MessageStream:
        await self._conversation_for(conversation_id, user_id)
        return self._hub.watch_messages(conversation_id, since_seq)

    def watch_conversations(self, user_id: str) -> ConversationListStream:
        return self._hub.watch_conversations(user_id)

    # exchanges

    async def propose_exchange(self, user_id: str, conversation_id: str, exchange_type: str, location, date_time, **extra):
        return await self._exchanges.propose(conversation_id, user_id, exchange_type, location, date_time, **extra)

    async def respond_exchange(self, user_id: str, proposal_id: str, decision: str):
        return await self._exchanges.respond(proposal_id, user_id, decision)

    async def complete_exchange(self, user_id: str, proposal_id: str):
        return await self._exchanges.complete(proposal_id, user_id)

    async def release_promotion(self, user_id: str, business_id: str, item_id: str, item_type: str = "promotion") -> int:
        owner = await self._item_repo.business_owner(business_id)
        if owner is None:
            raise NotFound(f"Business {business_id} not found")
        if owner != user_id:
            raise Unauthorized("Only the business owner can release its promotions")
        return await self._exchanges.release_promotion(business_id, item_id, item_type)

    # helpers

    async def _conversation_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if not conversation:
            raise NotFound(f"Conversation {conversation_id} not found")
        if user_id not in conversation["participants"]:
            raise Unauthorized("Not a participant of this conversation")
        return conversation

    async def _decorate(self, conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        others = [p for p in conversation["participants"] if p != user_id]
        conversation["other_user_id"] = others[0] if others else None
        conversation["unread"] = int((conversation.get("unread_count") or {}).get(user_id, 0))
        item_id = conversation.get("item_id")
        if item_id:
            conversation["item"] = await self._item_repo.preview(
                conversation.get("item_type") or "post",
                item_id,
                conversation.get("item_title"),
                conversation.get("item_image_key"),
            )
        else:
            conversation["item"] = None
        return conversation

    def present_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Add the exchange card reference and a signed URL for every stored media key."""
        message["exchange_id"] = message_reference(message)
        message["media"] = {key: self.media_url(key) for key in message.get("media_urls") or []}
        return message
