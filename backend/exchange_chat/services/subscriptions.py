"""Live, cancellable streams over conversations and their messages.

Both streams are pull based: the bus only signals that something changed and
the store is re-queried, so ordering always comes from the store (message
``seq``) and a lost or reordered notification costs at most one poll
interval. Streams hold a bus listener while open; ``cancel()`` (or leaving an
``async with`` block) releases it immediately and ends iteration.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from exchange_chat.config import Settings, get_settings
from exchange_chat.repositories.conversation_repository import ConversationRepository
from exchange_chat.repositories.message_repository import MessageRepository
from exchange_chat.services.references import message_reference
from exchange_chat.utils.errors import TransientIO
from exchange_chat.utils.realtime_bus import conversation_channel, user_channel

logger = logging.getLogger(__name__)


class _Stream:

    def __init__(self, bus, channel: str, settings: Settings) -> None:
        self._bus = bus
        self._channel = channel
        self._settings = settings
        self._sub = None
        self._closed = False
        self._buffer: Deque[Any] = deque()
        self._waiter: Optional[asyncio.Future] = None

    def __aiter__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    @property
    def closed(self) -> bool:
        return self._closed

    async def cancel(self) -> None:
        self._closed = True
        self._buffer.clear()
        if self._waiter is not None:
            self._waiter.cancel()
        await self._release()

    async def _release(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            await sub.cancel()

    async def __anext__(self):
        while not self._closed:
            if self._buffer:
                return self._buffer.popleft()
            try:
                if self._sub is None:
                    self._sub = await self._bus.subscribe(self._channel)
                    self._on_subscribed()
                await self._fill()
            except TransientIO as exc:
                if self._closed:
                    break
                logger.warning("Stream on %s interrupted (%s), resubscribing", self._channel, exc)
                await self._release()
                await asyncio.sleep(self._settings.resubscribe_backoff_seconds)
        raise StopAsyncIteration

    def _on_subscribed(self) -> None:
        pass

    async def _fill(self) -> None:
        raise NotImplementedError

    async def _wait_for_change(self, timeout: float) -> None:
        self._waiter = asyncio.ensure_future(self._sub.next_message(timeout=timeout))
        try:
            await self._waiter
        except asyncio.CancelledError:
            # cancel() ends the wait; any other cancellation belongs to the caller
            if not self._closed:
                raise
        finally:
            self._waiter = None


class MessageStream(_Stream):
    """Messages of one conversation in ascending ``seq`` order, forever.

    Restartable: pass the last ``seq`` already seen as ``since_seq``.
    Messages are released strictly in sequence; a hole (a sequence number
    handed out whose message has not landed yet) is waited for up to
    ``seq_gap_grace_seconds`` and then skipped.
    """

    def __init__(self, bus, message_repo: MessageRepository, conversation_id: str, since_seq: int, settings: Settings) -> None:
        super().__init__(bus, conversation_channel(conversation_id), settings)
        self._message_repo = message_repo
        self._conversation_id = conversation_id
        self._last_seq = since_seq
        self._gap_since: Optional[float] = None

    @property
    def last_seq(self) -> int:
        return self._last_seq

    async def _fill(self) -> None:
        items = await self._message_repo.list_after(self._conversation_id, self._last_seq)
        ready: List[Dict[str, Any]] = []
        expected = self._last_seq + 1
        for item in items:
            if item["seq"] != expected:
                break
            item["exchange_id"] = message_reference(item)
            ready.append(item)
            expected += 1
        if ready:
            self._gap_since = None
            self._last_seq = ready[-1]["seq"]
            self._buffer.extend(ready)
            return

        timeout = self._settings.stream_poll_seconds
        if items:
            now = asyncio.get_running_loop().time()
            if self._gap_since is None:
                self._gap_since = now
            waited = now - self._gap_since
            if waited >= self._settings.seq_gap_grace_seconds:
                logger.warning(
                    "Conversation %s: skipping missing seq %d..%d",
                    self._conversation_id, self._last_seq + 1, items[0]["seq"] - 1,
                )
                self._last_seq = items[0]["seq"] - 1
                self._gap_since = None
                return
            timeout = self._settings.seq_gap_grace_seconds - waited
        await self._wait_for_change(timeout)


class ConversationListStream(_Stream):
    """Snapshots of a user's conversations, newest activity first.

    The first item is the current list; after that a new snapshot is yielded
    whenever one of the user's conversations changes.
    """

    def __init__(self, bus, conversation_repo: ConversationRepository, user_id: str, limit: int, settings: Settings) -> None:
        super().__init__(bus, user_channel(user_id), settings)
        self._conversation_repo = conversation_repo
        self._user_id = user_id
        self._limit = limit
        self._dirty = True
        self._signature: Optional[list] = None

    def _on_subscribed(self) -> None:
        self._dirty = True

    async def _fill(self) -> None:
        if self._dirty:
            items, _ = await self._conversation_repo.list_for_user(self._user_id, limit=self._limit)
            self._dirty = False
            signature = [
                (it["_id"], it.get("last_message_seq"), sorted((it.get("unread_count") or {}).items()))
                for it in items
            ]
            if signature != self._signature:
                self._signature = signature
                self._buffer.append(items)
                return
        await self._wait_for_change(self._settings.stream_poll_seconds)
        self._dirty = True


class SubscriptionHub:

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository, bus, settings: Optional[Settings] = None) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._bus = bus
        self._settings = settings or get_settings()

    def watch_messages(self, conversation_id: str, since_seq: int = 0) -> MessageStream:
        return MessageStream(self._bus, self._message_repo, conversation_id, since_seq, self._settings)

    def watch_conversations(self, user_id: str, limit: int = 50) -> ConversationListStream:
        return ConversationListStream(self._bus, self._conversation_repo, user_id, limit, self._settings)
