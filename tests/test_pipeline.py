"""
Tests for the optimistic send pipeline.
"""
import asyncio
import re
from datetime import timedelta

from ephemera.client.errors import BackendRejected, TransientNetworkError
from ephemera.client.notices import INVALID_MESSAGE, SEND_FAILED
from ephemera.client.pipeline import ComposeField, OptimisticSendPipeline
from ephemera.client.scheduler import CountdownScheduler
from ephemera.client.store import LocalMessageStore
from ephemera.schemas.message import SendState


class GatedBackend:
    """Wraps a backend and holds insert_message until released or failed."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()
        self.failure = None

    async def insert_message(self, draft):
        await self.gate.wait()
        if self.failure is not None:
            raise self.failure
        return await self.inner.insert_message(draft)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def build_pipeline(conversation_id, backend, clock, notices=None, sender_id="alice"):
    store = LocalMessageStore()
    scheduler = CountdownScheduler(store, clock)
    pipeline = OptimisticSendPipeline(
        conversation_id,
        sender_id,
        backend,
        store,
        scheduler,
        clock,
        default_ttl_seconds=60,
        compose=ComposeField(),
        notify=(notices.append if notices is not None else None),
    )
    return pipeline, store, scheduler


class TestCorrelationIds:
    """Tests for correlation id generation."""

    def test_format_and_uniqueness(self, backend, clock, direct_conversation):
        pipeline, _, _ = build_pipeline(direct_conversation, backend, clock)
        first, second = pipeline.next_correlation_id(), pipeline.next_correlation_id()

        epoch_ms = int(clock.now().timestamp() * 1000)
        assert first == f"temp-{epoch_ms}-1"
        assert second == f"temp-{epoch_ms}-2"
        assert re.fullmatch(r"temp-\d+-\d+", first)


class TestSend:
    """Tests for the send path."""

    def test_pending_entry_appears_before_write_completes(self, backend, clock, direct_conversation):
        async def scenario():
            gated = GatedBackend(backend)
            pipeline, store, _ = build_pipeline(direct_conversation, gated, clock)

            task = asyncio.create_task(pipeline.send("hi"))
            await asyncio.sleep(0)
            pending = store.snapshot()
            assert len(pending) == 1
            assert pending[0].send_state == SendState.PENDING
            assert pending[0].id.startswith("temp-")

            gated.gate.set()
            outcome = await task
            return outcome, store.snapshot()

        outcome, final = asyncio.run(scenario())
        assert outcome.ok
        assert [m.id for m in final] == [outcome.message.id]
        assert final[0].send_state == SendState.SENT

    def test_ephemeral_send_starts_countdown(self, backend, clock, direct_conversation):
        async def scenario():
            pipeline, store, scheduler = build_pipeline(direct_conversation, backend, clock)
            outcome = await pipeline.send("secret", is_ephemeral=True, ttl_seconds=30)
            return outcome, scheduler.seconds_left(outcome.message.id)

        outcome, seconds_left = asyncio.run(scenario())
        assert outcome.message.expires_at == clock.now() + timedelta(seconds=30)
        assert seconds_left == 30

    def test_feed_and_callback_leave_single_entry(self, backend, feed, clock, direct_conversation):
        """The sender's own insert event arrives before the write returns."""
        async def scenario():
            pipeline, store, _ = build_pipeline(direct_conversation, backend, clock)
            feed.subscribe(
                direct_conversation,
                lambda event: store.upsert_from_remote(event.record) if event.record else None,
            )
            outcome = await pipeline.send("hi")
            return outcome, store.ids()

        outcome, ids = asyncio.run(scenario())
        assert ids == [outcome.message.id]

    def test_group_send_uses_single_write(self, backend, clock, group_conversation):
        async def scenario():
            pipeline, _, _ = build_pipeline(group_conversation, backend, clock)
            return await pipeline.send("hello all")

        outcome = asyncio.run(scenario())
        assert outcome.ok
        assert outcome.message.receiver_id is None

    def test_compose_is_cleared_on_send(self, backend, clock, direct_conversation):
        async def scenario():
            pipeline, _, _ = build_pipeline(direct_conversation, backend, clock)
            pipeline.compose.text = "hello"
            await pipeline.send("hello")
            return pipeline.compose.text

        assert asyncio.run(scenario()) == ""


class TestRollback:
    """Tests for the failure path."""

    def test_network_failure_restores_compose_text(self, backend, clock, direct_conversation):
        notices = []

        async def scenario():
            gated = GatedBackend(backend)
            pipeline, store, _ = build_pipeline(direct_conversation, gated, clock, notices)
            pipeline.compose.text = "hello"

            task = asyncio.create_task(pipeline.send("hello"))
            await asyncio.sleep(0)
            assert len(store.pending()) == 1
            assert pipeline.compose.text == ""

            gated.failure = TransientNetworkError("offline")
            gated.gate.set()
            outcome = await task
            return outcome, store.snapshot(), pipeline.compose.text

        outcome, final, compose_text = asyncio.run(scenario())
        assert not outcome.ok
        assert isinstance(outcome.error, TransientNetworkError)
        assert outcome.restored_content == "hello"
        assert final == []
        assert compose_text == "hello"
        assert [n.kind for n in notices] == [SEND_FAILED]
        assert notices[0].message_id == outcome.correlation_id

    def test_rejection_rolls_back(self, backend, clock, direct_conversation):
        notices = []

        async def scenario():
            pipeline, store, _ = build_pipeline(
                direct_conversation, backend, clock, notices, sender_id="mallory"
            )
            outcome = await pipeline.send("let me in")
            return outcome, store.snapshot()

        outcome, final = asyncio.run(scenario())
        assert isinstance(outcome.error, BackendRejected)
        assert outcome.error.status_code == 403
        assert final == []
        assert [n.kind for n in notices] == [SEND_FAILED]

    def test_invalid_message_never_reaches_store(self, backend, clock, direct_conversation):
        notices = []

        async def scenario():
            pipeline, store, _ = build_pipeline(direct_conversation, backend, clock, notices)
            outcome = await pipeline.send("")
            return outcome, len(store)

        outcome, size = asyncio.run(scenario())
        assert not outcome.ok
        assert size == 0
        assert [n.kind for n in notices] == [INVALID_MESSAGE]
