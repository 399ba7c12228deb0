"""
Client side of the view-and-destroy protocol.
"""
from typing import Optional, Set

from ephemera.client.backend import Backend
from ephemera.client.errors import EphemeraError
from ephemera.client.notices import VIEW_FAILED, Notice, Notify, log_notice
from ephemera.client.scheduler import CountdownScheduler
from ephemera.client.store import LocalMessageStore
from ephemera.core.logging import get_logger
from ephemera.schemas.message import ViewAction

logger = get_logger(__name__)


class ViewAndDestroy:
    """Consumes ephemeral messages when the local user taps them."""

    def __init__(
        self,
        viewer_id: str,
        backend: Backend,
        store: LocalMessageStore,
        scheduler: CountdownScheduler,
        notify: Optional[Notify] = None,
    ):
        self.viewer_id = viewer_id
        self.backend = backend
        self.store = store
        self.scheduler = scheduler
        self.notify = notify or log_notice
        self._in_flight: Set[str] = set()

    def is_in_flight(self, message_id: str) -> bool:
        return message_id in self._in_flight

    async def view(self, message_id: str) -> Optional[ViewAction]:
        """
        Consume a message after an explicit view action.

        Returns the action taken, or None when the tap was coalesced with
        one already in flight or the backend could not be reached. In the
        latter case the message stays visible and tapping again is safe.
        """
        message = self.store.get(message_id)
        if message is None:
            return ViewAction.ALREADY_GONE
        if not message.is_ephemeral or message.is_pending or message.sender_id == self.viewer_id:
            return ViewAction.NOT_APPLICABLE
        if message_id in self._in_flight:
            return None

        self._in_flight.add(message_id)
        try:
            result = await self.backend.mark_message_viewed(message_id, self.viewer_id)
        except EphemeraError as e:
            logger.warning(
                "View failed",
                extra={"extra_data": {"message_id": message_id, "error": str(e)}}
            )
            self.notify(Notice(VIEW_FAILED, "Could not open the message. Please try again.", message_id))
            return None
        finally:
            self._in_flight.discard(message_id)

        if result.action in (ViewAction.DELETED, ViewAction.ALREADY_GONE):
            self.store.remove(message_id)
            self.scheduler.cancel(message_id)

        logger.info(
            "Message viewed",
            extra={"extra_data": {"message_id": message_id, "viewer_id": self.viewer_id, "action": result.action.value}}
        )
        return result.action
