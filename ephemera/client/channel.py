"""
Realtime reconciliation channel.

Applies the backend's change feed to the local store: inserts are merged
without duplicating optimistic copies, deletes withdraw consumed messages,
updates carry read receipts.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Set

from ephemera.client.backend import Backend
from ephemera.client.errors import EphemeraError
from ephemera.client.scheduler import CountdownScheduler
from ephemera.client.store import IGNORED, LocalMessageStore
from ephemera.core.clock import Clock
from ephemera.core.expiry import is_reachable
from ephemera.core.logging import get_logger
from ephemera.schemas.message import ChangeEvent

logger = get_logger(__name__)


class RealtimeChannel:
    """One conversation's subscription, owned by a ``ConversationSession``."""

    def __init__(
        self,
        conversation_id: str,
        backend: Backend,
        store: LocalMessageStore,
        scheduler: CountdownScheduler,
        local_user_id: str,
        clock: Clock,
        on_resync: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.conversation_id = conversation_id
        self.backend = backend
        self.store = store
        self.scheduler = scheduler
        self.local_user_id = local_user_id
        self.clock = clock
        # Re-fetches state the feed may have missed while disconnected
        self.on_resync = on_resync
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._bookkeeping: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    async def open(self) -> None:
        if self.is_open:
            return
        self._unsubscribe = await self.backend.subscribe(
            self.conversation_id, self.handle_event, on_reconnect=self.handle_reconnect
        )
        logger.info(
            "Realtime channel opened",
            extra={"extra_data": {"conversation_id": self.conversation_id, "user_id": self.local_user_id}}
        )

    async def close(self) -> None:
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            unsubscribe()
            logger.info(
                "Realtime channel closed",
                extra={"extra_data": {"conversation_id": self.conversation_id}}
            )

        tasks, self._bookkeeping = self._bookkeeping, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def handle_event(self, event: ChangeEvent) -> None:
        if event.conversation_id != self.conversation_id:
            return

        if event.event == "delete":
            self.store.remove(event.message_id)
            self.scheduler.cancel(event.message_id)
        elif event.event == "insert":
            self._on_insert(event)
        elif event.event == "update":
            self._on_update(event)

    def handle_reconnect(self) -> None:
        logger.info(
            "Realtime channel reconnected, resyncing",
            extra={"extra_data": {"conversation_id": self.conversation_id}}
        )
        if self.on_resync is not None and self.is_open:
            self._track(self.on_resync())

    def _on_insert(self, event: ChangeEvent) -> None:
        record = event.record
        if record is None:
            return
        if not is_reachable(record, self.clock.now()):
            return

        if self.store.upsert_from_remote(record) == IGNORED:
            return
        if record.expires_at is not None:
            self.scheduler.start(record)

        # Arrival is a delivery, never a view: only read bookkeeping happens here
        if record.sender_id != self.local_user_id:
            self._schedule_mark_read(record.id)

    def _on_update(self, event: ChangeEvent) -> None:
        record = event.record
        if record is None or event.message_id not in self.store:
            return
        if not is_reachable(record, self.clock.now()):
            self.store.remove(record.id)
            self.scheduler.cancel(record.id)
            return
        self.store.replace_by_correlation(lambda m: m.id == record.id, record)

    def _schedule_mark_read(self, message_id: str) -> None:
        self._track(self._mark_read(message_id))

    def _track(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._bookkeeping.add(task)
        task.add_done_callback(self._bookkeeping.discard)

    async def _mark_read(self, message_id: str) -> None:
        try:
            await self.backend.mark_read(message_id, self.local_user_id)
        except EphemeraError as e:
            logger.warning(
                "Read receipt failed",
                extra={"extra_data": {"message_id": message_id, "error": str(e)}}
            )
