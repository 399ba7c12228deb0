"""
Background TTL housekeeping.

Expired ephemeral messages that nobody viewed are deleted here, on the
backend, and their delete events reach every subscribed client.
"""
import asyncio
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ephemera.core.clock import Clock
from ephemera.core.database import session_scope
from ephemera.core.feed import ChangeFeed
from ephemera.core.logging import get_logger
from ephemera.core.object_store import LocalObjectStore
from ephemera.core.procedures import sweep_expired

logger = get_logger(__name__)


class ExpirySweeper:
    """
    Periodically runs ``sweep_expired`` until stopped.

    Media of swept messages is deleted from ``object_store`` when one is given.
    """

    def __init__(
        self,
        session_factory,
        feed: ChangeFeed,
        clock: Clock,
        interval: float = 30.0,
        object_store: Optional[LocalObjectStore] = None,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.clock = clock
        self.interval = interval
        self.object_store = object_store
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> int:
        with session_scope(self.session_factory) as db:
            return sweep_expired(db, self.feed, self.clock.now(), object_store=self.object_store)

    async def run(self) -> None:
        logger.info("Expiry sweeper running", extra={"extra_data": {"interval": self.interval}})
        while True:
            try:
                self.sweep_once()
            except SQLAlchemyError:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")
