import asyncio
import json
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from conftest import USER_A, USER_B, build_service
from exchange_chat.config import Settings
from exchange_chat.utils.errors import TransientIO
from exchange_chat.utils.realtime_bus import LocalBus, conversation_channel, user_channel


async def _next(stream, timeout=2.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


async def _insert_raw(db, bus, conversation_id, seq, text):
    """Land a message directly in the store, as a concurrent writer would."""
    await db["messages"].insert_one(
        {
            "conversation_id": ObjectId(conversation_id),
            "seq": seq,
            "sender_id": USER_A,
            "text": text,
            "media_urls": [],
            "read": False,
            "created_at": datetime.now(timezone.utc),
            "kind": "plain",
            "exchange_id": None,
        }
    )
    await bus.publish(conversation_channel(conversation_id), json.dumps({"type": "message", "seq": seq}))


class FlakyBus(LocalBus):
    """Fails the first ``failures`` subscriptions."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def subscribe(self, channel):
        if self.failures:
            self.failures -= 1
            raise TransientIO("bus down")
        return await super().subscribe(channel)


class TestMessageStream:

    async def test_backlog_then_live(self, service, conversation):
        cid = conversation["_id"]
        await service.send_message(USER_A, cid, "before")

        async with await service.watch_messages(USER_B, cid) as stream:
            first = await _next(stream)
            assert first["text"] == "before"

            pending = asyncio.ensure_future(stream.__anext__())
            await asyncio.sleep(0)
            await service.send_message(USER_B, cid, "live")
            second = await asyncio.wait_for(pending, 2.0)
            assert second["text"] == "live"
            assert second["seq"] == 2

    async def test_ascending_seq_whatever_the_write_order(self, service, conversation, db, bus):
        cid = conversation["_id"]
        for seq, text in ((3, "t3"), (1, "t1"), (2, "t2")):
            await _insert_raw(db, bus, cid, seq, text)

        async with await service.watch_messages(USER_B, cid) as stream:
            got = [(await _next(stream))["text"] for _ in range(3)]
        assert got == ["t1", "t2", "t3"]

    async def test_waits_for_a_late_earlier_message(self, db, bus, conversation):
        patient = build_service(db, bus, Settings(stream_poll_seconds=0.1, seq_gap_grace_seconds=5))
        cid = conversation["_id"]
        async with await patient.watch_messages(USER_B, cid) as stream:
            pending = asyncio.ensure_future(stream.__anext__())
            await _insert_raw(db, bus, cid, 2, "second")
            await asyncio.sleep(0.2)
            assert not pending.done()
            await _insert_raw(db, bus, cid, 1, "first")
            assert (await asyncio.wait_for(pending, 2.0))["text"] == "first"
            assert (await _next(stream))["text"] == "second"

    async def test_skips_a_hole_after_the_grace_period(self, service, conversation, db, bus):
        cid = conversation["_id"]
        await _insert_raw(db, bus, cid, 2, "orphaned neighbour")
        async with await service.watch_messages(USER_B, cid) as stream:
            message = await _next(stream)
            assert message["seq"] == 2
            assert stream.last_seq == 2

    async def test_restart_from_seq(self, service, conversation):
        cid = conversation["_id"]
        for text in ("a", "b", "c"):
            await service.send_message(USER_A, cid, text)
        async with await service.watch_messages(USER_B, cid, since_seq=2) as stream:
            assert (await _next(stream))["text"] == "c"

    async def test_cancel_releases_listener(self, service, conversation, bus):
        cid = conversation["_id"]
        await service.send_message(USER_A, cid, "x")
        stream = await service.watch_messages(USER_B, cid)
        await _next(stream)
        assert bus.listener_count(conversation_channel(cid)) == 1

        await stream.cancel()

        assert stream.closed
        assert bus.listener_count(conversation_channel(cid)) == 0
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    async def test_cancel_wakes_a_parked_reader(self, db, bus, conversation):
        slow = build_service(db, bus, Settings(stream_poll_seconds=30))
        stream = await slow.watch_messages(USER_B, conversation["_id"])
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.05)
        assert not pending.done()

        await stream.cancel()

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, 1.0)

    async def test_resubscribes_after_transient_failure(self, db, settings, conversation):
        flaky = FlakyBus(failures=2)
        service = build_service(db, flaky, settings)
        cid = conversation["_id"]
        await service.send_message(USER_A, cid, "still here")
        async with await service.watch_messages(USER_B, cid) as stream:
            assert (await _next(stream))["text"] == "still here"

    async def test_exchange_reference_resolved(self, service, conversation):
        cid = conversation["_id"]
        exchange = await service.propose_exchange(
            USER_A, cid, "pickup", {"id": "1"}, datetime(2025, 4, 1, 10, 0, tzinfo=timezone.utc)
        )
        async with await service.watch_messages(USER_B, cid) as stream:
            assert (await _next(stream))["exchange_id"] == exchange["_id"]


class TestConversationListStream:

    async def test_snapshot_then_updates(self, service, conversation, bus):
        cid = conversation["_id"]
        async with service.watch_conversations(USER_A) as stream:
            first = await _next(stream)
            assert [c["_id"] for c in first] == [cid]
            assert first[0]["unread_count"][USER_A] == 0

            pending = asyncio.ensure_future(stream.__anext__())
            await asyncio.sleep(0)
            await service.send_message(USER_B, cid, "ping")
            second = await asyncio.wait_for(pending, 2.0)
            assert second[0]["unread_count"][USER_A] == 1
            assert second[0]["last_message"]["text"] == "ping"

            pending = asyncio.ensure_future(stream.__anext__())
            await asyncio.sleep(0)
            await service.mark_read(USER_A, cid)
            third = await asyncio.wait_for(pending, 2.0)
            assert third[0]["unread_count"][USER_A] == 0

        assert bus.listener_count(user_channel(USER_A)) == 0
