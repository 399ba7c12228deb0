"""
Countdown scheduler for ephemeral messages.

One shared ticker walks every tracked message once per interval instead of
keeping a timer per message. Expired messages are dropped from the local
store only; deleting them on the backend is housekeeping's job.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ephemera.client.store import LocalMessageStore
from ephemera.core.clock import Clock
from ephemera.core.expiry import remaining
from ephemera.core.logging import get_logger

logger = get_logger(__name__)


class CountdownScheduler:
    """Tracks ``seconds_left`` for every ephemeral message on screen."""

    def __init__(
        self,
        store: LocalMessageStore,
        clock: Clock,
        interval: float = 1.0,
        on_expire: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.clock = clock
        self.interval = interval
        self.on_expire = on_expire
        self._seconds_left: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def active_count(self) -> int:
        """Number of messages currently counting down."""
        return len(self._seconds_left)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_tracking(self, message_id: str) -> bool:
        return message_id in self._seconds_left

    def seconds_left(self, message_id: str) -> Optional[int]:
        return self._seconds_left.get(message_id)

    def start(self, message) -> bool:
        """
        Begin counting down a message.

        No-op for messages without a lifetime and for ids already tracked.
        """
        if message.id in self._seconds_left:
            return False
        status = remaining(message, self.clock.now())
        if status.seconds_left is None:
            return False
        self._seconds_left[message.id] = status.seconds_left
        return True

    def cancel(self, message_id: str) -> bool:
        return self._seconds_left.pop(message_id, None) is not None

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Recompute every tracked countdown. Returns the ids that expired.

        A tracked message that has already left the store (viewed, deleted
        remotely) is simply forgotten.
        """
        now = now or self.clock.now()
        expired = []
        for message_id in list(self._seconds_left):
            message = self.store.get(message_id)
            if message is None:
                del self._seconds_left[message_id]
                continue

            status = remaining(message, now)
            if status.seconds_left is None:
                del self._seconds_left[message_id]
            elif status.is_expired:
                del self._seconds_left[message_id]
                self.store.remove(message_id)
                expired.append(message_id)
            else:
                self._seconds_left[message_id] = status.seconds_left

        for message_id in expired:
            logger.debug("Message expired locally", extra={"extra_data": {"message_id": message_id}})
            if self.on_expire is not None:
                self.on_expire(message_id)
        return expired

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Countdown tick failed")

    def open(self) -> None:
        """Start the shared ticker on the running loop."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def close(self) -> None:
        """Stop the ticker and forget every countdown."""
        self._seconds_left.clear()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
