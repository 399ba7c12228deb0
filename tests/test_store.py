"""
Tests for the local message store.
"""
from datetime import timedelta

from ephemera.client.store import APPENDED, IGNORED, RECONCILED, UPDATED, LocalMessageStore
from ephemera.schemas.message import SendState


class TestBasicOperations:
    """Tests for insert, replace and remove."""

    def test_insert_keeps_order(self, make_message):
        store = LocalMessageStore()
        first, second = make_message(), make_message()
        assert store.insert(first)
        assert store.insert(second)
        assert store.ids() == [first.id, second.id]

    def test_insert_same_id_is_noop(self, make_message):
        store = LocalMessageStore()
        message = make_message()
        store.insert(message)
        assert store.insert(message.model_copy(update={"content": "edited"})) is False
        assert len(store) == 1
        assert store.get(message.id).content == "hello"

    def test_replace_by_correlation_keeps_position(self, make_message):
        store = LocalMessageStore()
        pending = make_message(id="temp-1-1", send_state=SendState.PENDING)
        after = make_message()
        store.insert(pending)
        store.insert(after)

        confirmed = make_message()
        assert store.replace_by_correlation(lambda m: m.id == "temp-1-1", confirmed)
        assert store.ids() == [confirmed.id, after.id]
        assert "temp-1-1" not in store

    def test_replace_by_correlation_without_match(self, make_message):
        store = LocalMessageStore()
        assert store.replace_by_correlation(lambda m: False, make_message()) is False
        assert len(store) == 0

    def test_remove_absent_is_noop(self):
        store = LocalMessageStore()
        assert store.remove("missing") is False

    def test_removed_message_is_never_reinserted(self, make_message):
        store = LocalMessageStore()
        message = make_message()
        store.insert(message)
        assert store.remove(message.id)

        assert store.insert(message) is False
        assert store.upsert_from_remote(message) == IGNORED
        assert message.id not in store


    def test_prune_removes_confirmed_messages_the_server_dropped(self, make_message):
        store = LocalMessageStore()
        kept, dropped = make_message(), make_message()
        pending = make_message(id="temp-1-1", send_state=SendState.PENDING)
        for message in (kept, dropped, pending):
            store.insert(message)

        assert store.prune({kept.id}) == [dropped.id]
        assert store.ids() == [kept.id, "temp-1-1"]
        assert store.upsert_from_remote(dropped) == IGNORED

class TestUpsertFromRemote:
    """Tests for merging server records."""

    def test_same_id_updates_in_place(self, make_message):
        store = LocalMessageStore()
        message = make_message()
        store.insert(message)
        assert store.upsert_from_remote(message.model_copy(update={"is_read": True})) == UPDATED
        assert store.get(message.id).is_read is True
        assert len(store) == 1

    def test_reconciles_pending_copy(self, make_message, clock):
        store = LocalMessageStore(match_window_seconds=120)
        pending = make_message(id="temp-1-1", send_state=SendState.PENDING, content="hi")
        store.insert(pending)

        record = make_message(content="hi", created_at=clock.now() + timedelta(seconds=2))
        assert store.upsert_from_remote(record) == RECONCILED
        assert store.ids() == [record.id]
        assert store.get(record.id).send_state == SendState.SENT

    def test_does_not_reconcile_other_sender(self, make_message):
        store = LocalMessageStore()
        store.insert(make_message(id="temp-1-1", send_state=SendState.PENDING, content="hi"))

        record = make_message(sender_id="bob", receiver_id="alice", content="hi")
        assert store.upsert_from_remote(record) == APPENDED
        assert len(store) == 2

    def test_does_not_reconcile_outside_window(self, make_message, clock):
        store = LocalMessageStore(match_window_seconds=120)
        store.insert(make_message(id="temp-1-1", send_state=SendState.PENDING, content="hi"))

        record = make_message(content="hi", created_at=clock.now() + timedelta(minutes=5))
        assert store.upsert_from_remote(record) == APPENDED

    def test_does_not_reconcile_confirmed_entries(self, make_message):
        store = LocalMessageStore()
        store.insert(make_message(content="hi"))
        assert store.upsert_from_remote(make_message(content="hi")) == APPENDED
        assert len(store) == 2

    def test_identical_texts_reconcile_one_at_a_time(self, make_message):
        """Two pending "ok"s each get their own server record."""
        store = LocalMessageStore()
        store.insert(make_message(id="temp-1-1", send_state=SendState.PENDING, content="ok"))
        store.insert(make_message(id="temp-1-2", send_state=SendState.PENDING, content="ok"))

        first, second = make_message(content="ok"), make_message(content="ok")
        assert store.upsert_from_remote(first) == RECONCILED
        assert store.upsert_from_remote(second) == RECONCILED
        assert store.ids() == [first.id, second.id]
        assert store.pending() == []

    def test_no_duplicate_display_either_order(self, make_message):
        """Send callback and feed delivery in either order leave one entry."""
        for feed_first in (True, False):
            store = LocalMessageStore()
            store.insert(make_message(id="temp-1-1", send_state=SendState.PENDING, content="hi"))
            record = make_message(content="hi")

            def apply_callback():
                if not store.replace_by_correlation(lambda m: m.id == "temp-1-1", record):
                    store.insert(record)

            if feed_first:
                store.upsert_from_remote(record)
                apply_callback()
            else:
                apply_callback()
                store.upsert_from_remote(record)

            assert store.ids() == [record.id]

    def test_replacing_into_existing_id_drops_stale_slot(self, make_message):
        store = LocalMessageStore()
        record = make_message(content="hi")
        store.insert(make_message(id="temp-1-1", send_state=SendState.PENDING, content="hi"))
        store.insert(record)

        assert store.replace_by_correlation(lambda m: m.id == "temp-1-1", record)
        assert store.ids() == [record.id]
