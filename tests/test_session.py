"""
End-to-end tests for ConversationSession over the in-process backend.
"""
import asyncio

import pytest

from ephemera.client.backend import LocalBackend
from ephemera.client.errors import TransientNetworkError
from ephemera.client.notices import LOAD_FAILED, SEND_FAILED, SUBSCRIBE_FAILED
from ephemera.client.session import ConversationSession
from ephemera.core import procedures
from ephemera.core.feed import ChangeFeed
from ephemera.schemas.message import MessageDraft, SendState, ViewAction


class FlakyBackend(LocalBackend):
    """LocalBackend whose writes can be switched off."""

    offline = False

    async def insert_message(self, draft):
        if self.offline:
            await self._round_trip()
            raise TransientNetworkError("connection reset")
        return await super().insert_message(draft)


class BrokenBackend(LocalBackend):
    """Every call fails as if the network were down."""

    async def subscribe(self, conversation_id, handler, on_reconnect=None):
        raise TransientNetworkError("offline")

    async def list_messages(self, conversation_id, viewer_id, since=None):
        raise TransientNetworkError("offline")

    async def mark_conversation_read(self, conversation_id, reader_id):
        raise TransientNetworkError("offline")


class GarbledBackend(LocalBackend):
    """History comes back in a shape nobody expected."""

    async def list_messages(self, conversation_id, viewer_id, since=None):
        await self._round_trip()
        raise ValueError("unexpected payload")


def local_backend(session_factory, feed, clock, object_store, settings, cls=LocalBackend, **kwargs):
    return cls(session_factory, feed, clock, object_store=object_store, settings=settings, **kwargs)


class TestLifecycle:
    """Opening and closing a conversation screen."""

    def test_close_releases_everything(self, backend, feed, clock, settings, direct_conversation):
        async def scenario():
            session = ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings)
            async with session:
                await session.send_message("hello", is_ephemeral=True)
                assert session.scheduler.active_count == 1
                assert session.scheduler.running
                assert feed.subscriber_count(direct_conversation) == 1
            return session

        session = asyncio.run(scenario())
        assert session.scheduler.active_count == 0
        assert not session.scheduler.running
        assert feed.subscriber_count(direct_conversation) == 0
        assert not session.channel.is_open

    def test_close_on_error_path(self, backend, feed, clock, settings, direct_conversation):
        async def scenario():
            try:
                async with ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings):
                    raise RuntimeError("screen crashed")
            except RuntimeError:
                pass

        asyncio.run(scenario())
        assert feed.subscriber_count(direct_conversation) == 0

    def test_open_loads_history_and_marks_read(self, backend, db, feed, clock, settings, direct_conversation):
        procedures.insert_message(
            db, feed, MessageDraft(conversation_id=direct_conversation, sender_id="alice", content="earlier"),
            clock.now(),
        )

        async def scenario():
            async with ConversationSession(direct_conversation, "bob", backend, clock=clock, settings=settings) as s:
                return [(d.message.content, d.message.is_read) for d in s.messages()]

        assert asyncio.run(scenario()) == [("earlier", True)]
        messages, _ = procedures.list_messages(db, direct_conversation, "bob", clock.now())
        assert messages[0].is_read is True

    def test_open_failures_are_reported_not_raised(self, session_factory, feed, clock, object_store, settings,
                                                   direct_conversation):
        backend = local_backend(session_factory, feed, clock, object_store, settings, cls=BrokenBackend)
        notices = []

        async def scenario():
            async with ConversationSession(
                direct_conversation, "bob", backend, clock=clock, settings=settings, notify=notices.append
            ) as session:
                return session.is_open

        assert asyncio.run(scenario()) is True
        assert [n.kind for n in notices] == [SUBSCRIBE_FAILED, LOAD_FAILED]

    def test_leaving_while_history_loads_releases_subscription(self, session_factory, feed, clock, object_store,
                                                               settings, direct_conversation):
        backend = local_backend(session_factory, feed, clock, object_store, settings, latency=0.05)

        async def scenario():
            async def screen():
                async with ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings):
                    await asyncio.sleep(10)

            task = asyncio.get_running_loop().create_task(screen())
            await asyncio.sleep(0.01)
            subscribed = feed.subscriber_count(direct_conversation)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return subscribed

        assert asyncio.run(scenario()) == 1
        assert feed.subscriber_count(direct_conversation) == 0

    def test_unexpected_load_error_releases_subscription(self, session_factory, feed, clock, object_store, settings,
                                                         direct_conversation):
        backend = local_backend(session_factory, feed, clock, object_store, settings, cls=GarbledBackend)

        async def scenario():
            session = ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings)
            with pytest.raises(ValueError):
                async with session:
                    pass
            return session

        session = asyncio.run(scenario())
        assert not session.is_open
        assert not session.channel.is_open
        assert feed.subscriber_count(direct_conversation) == 0


class TestScenarios:
    """The end-to-end lifecycle of an ephemeral message."""

    def test_unviewed_message_expires_locally(self, backend, clock, settings, direct_conversation):
        async def scenario():
            async with ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings) as s:
                task = s.post_message("hello", is_ephemeral=True, ttl_seconds=60)
                await asyncio.sleep(0)
                pending = s.messages()
                assert len(pending) == 1
                assert pending[0].send_state == SendState.PENDING

                outcome = await task
                confirmed = s.messages()
                assert [d.id for d in confirmed] == [outcome.message.id]
                assert confirmed[0].send_state == SendState.SENT
                assert confirmed[0].seconds_left == 60

                clock.advance(30)
                s.scheduler.tick()
                assert s.messages()[0].seconds_left == 30

                clock.advance(30)
                assert s.scheduler.tick() == [outcome.message.id]
                return s.messages()

        assert asyncio.run(scenario()) == []

    def test_recipient_view_then_late_delete_event(self, session_factory, feed, clock, object_store, settings,
                                                   direct_conversation):
        backend = local_backend(session_factory, feed, clock, object_store, settings, deferred_delivery=True)

        async def scenario():
            alice = ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings)
            bob = ConversationSession(direct_conversation, "bob", backend, clock=clock, settings=settings)
            async with alice, bob:
                outcome = await alice.send_message("hello", is_ephemeral=True)
                await asyncio.sleep(0)
                message_id = outcome.message.id
                assert message_id in bob.store

                action = await bob.view_message(message_id)
                assert message_id not in bob.store

                # The delete event reaches both screens afterwards
                await asyncio.sleep(0)
                return action, message_id in alice.store, message_id in bob.store

        assert asyncio.run(scenario()) == (ViewAction.DELETED, False, False)

    def test_delete_missed_while_disconnected_is_caught_up(self, session_factory, feed, clock, object_store,
                                                           settings, direct_conversation):
        alice_backend = local_backend(session_factory, feed, clock, object_store, settings)
        # Bob's view is published on a feed alice is not listening to
        bob_backend = local_backend(session_factory, ChangeFeed(), clock, object_store, settings)

        async def scenario():
            async with ConversationSession(
                direct_conversation, "alice", alice_backend, clock=clock, settings=settings
            ) as alice:
                outcome = await alice.send_message("hello", is_ephemeral=True)
                message_id = outcome.message.id
                await bob_backend.mark_message_viewed(message_id, "bob")
                assert message_id in alice.store

                alice.channel.handle_reconnect()
                for _ in range(50):
                    if message_id not in alice.store:
                        break
                    await asyncio.sleep(0.01)
                return message_id in alice.store, alice.scheduler.is_tracking(message_id)

        assert asyncio.run(scenario()) == (False, False)

    def test_two_recipients_view_in_same_tick(self, backend, clock, settings, group_conversation):
        async def scenario():
            alice = ConversationSession(group_conversation, "alice", backend, clock=clock, settings=settings)
            bob = ConversationSession(group_conversation, "bob", backend, clock=clock, settings=settings)
            carol = ConversationSession(group_conversation, "carol", backend, clock=clock, settings=settings)
            async with alice, bob, carol:
                outcome = await alice.send_message("group secret", is_ephemeral=True)
                message_id = outcome.message.id
                results = await asyncio.gather(bob.view_message(message_id), carol.view_message(message_id))
                return results, message_id in bob.store, message_id in carol.store

        results, in_bob, in_carol = asyncio.run(scenario())
        assert sorted(r.value for r in results) == ["already-gone", "deleted"]
        assert not in_bob
        assert not in_carol

    def test_failed_send_restores_compose(self, session_factory, feed, clock, object_store, settings,
                                          direct_conversation):
        backend = local_backend(session_factory, feed, clock, object_store, settings, cls=FlakyBackend)
        backend.offline = True
        notices = []

        async def scenario():
            async with ConversationSession(
                direct_conversation, "alice", backend, clock=clock, settings=settings, notify=notices.append
            ) as session:
                session.compose.text = "did you get this?"
                task = session.post_message()
                await asyncio.sleep(0)
                assert len(session.messages()) == 1
                outcome = await task
                return outcome, session.messages(), session.compose.text

        outcome, displayed, compose_text = asyncio.run(scenario())
        assert isinstance(outcome.error, TransientNetworkError)
        assert displayed == []
        assert compose_text == "did you get this?"
        assert [n.kind for n in notices] == [SEND_FAILED]


class TestMedia:
    """Photo and video sends."""

    def test_send_photo(self, backend, clock, settings, direct_conversation, object_store):
        async def scenario():
            async with ConversationSession(direct_conversation, "alice", backend, clock=clock, settings=settings) as s:
                return await s.send_media(b"\x89PNG fake", "image/png", caption="look", is_ephemeral=True)

        outcome = asyncio.run(scenario())
        assert outcome.ok
        assert outcome.message.message_type == "image"
        assert outcome.message.media_ref.startswith("http://testserver/media/")
        key = outcome.message.media_ref.rsplit("/", 1)[1]
        assert object_store.get(key) == (b"\x89PNG fake", "image/png")

    def test_unsupported_upload_is_reported(self, backend, clock, settings, direct_conversation):
        notices = []

        async def scenario():
            async with ConversationSession(
                direct_conversation, "alice", backend, clock=clock, settings=settings, notify=notices.append
            ) as s:
                outcome = await s.send_media(b"MZ", "application/x-msdownload")
                return outcome, s.messages()

        outcome, displayed = asyncio.run(scenario())
        assert outcome is None
        assert displayed == []
        assert [n.kind for n in notices] == ["upload-failed"]
