"""
Backend collaborator contract, and an in-process implementation.

``LocalBackend`` runs the server procedures directly against a SQLAlchemy
session factory and an in-process ``ChangeFeed``. It is what tests and
single-process deployments use; ``ephemera.client.http.HttpBackend`` talks
to the FastAPI service instead.
"""
import asyncio
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ephemera.client.errors import BackendRejected, TransientNetworkError
from ephemera.core import procedures
from ephemera.core.clock import Clock, SystemClock
from ephemera.core.config import Settings, get_settings
from ephemera.core.database import session_scope
from ephemera.core.errors import ProcedureError
from ephemera.core.feed import ChangeFeed
from ephemera.core.logging import get_logger
from ephemera.core.object_store import LocalObjectStore, ObjectStoreError
from ephemera.schemas.message import ChangeEvent, MessageBase, MessageDraft, ViewResult

logger = get_logger(__name__)

EventHandler = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]
ReconnectHandler = Callable[[], None]


class Backend(Protocol):
    """What the client core needs from the backend. Every call may suspend."""

    async def insert_message(self, draft: MessageDraft) -> MessageBase:
        """Durable write; group conversations fan out server-side."""

    async def mark_message_viewed(self, message_id: str, viewer_id: str) -> ViewResult:
        """Atomic compare-and-delete of an ephemeral message."""

    async def list_messages(
        self,
        conversation_id: str,
        viewer_id: str,
        since: Optional[datetime] = None,
    ) -> List[MessageBase]:
        """Initial load, oldest first, unreachable rows excluded."""

    async def mark_read(self, message_id: str, reader_id: str) -> bool:
        """Delivery acknowledgement."""

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> int:
        """Acknowledge every incoming message of a conversation."""

    async def upload_media(self, data: bytes, content_type: str) -> str:
        """Store a blob and return its URL."""

    async def subscribe(
        self,
        conversation_id: str,
        handler: EventHandler,
        on_reconnect: Optional[ReconnectHandler] = None,
    ) -> Unsubscribe:
        """
        Start receiving change events; returns the disposer.

        ``on_reconnect`` runs whenever the feed resumes after a drop. Events
        published while it was down are not replayed.
        """


class LocalBackend:
    """Backend running the procedures in-process."""

    def __init__(
        self,
        session_factory,
        feed: Optional[ChangeFeed] = None,
        clock: Optional[Clock] = None,
        object_store: Optional[LocalObjectStore] = None,
        settings: Optional[Settings] = None,
        deferred_delivery: bool = False,
        latency: float = 0.0,
    ):
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.object_store = object_store or LocalObjectStore(
            self.settings.media_dir, self.settings.public_base_url
        )
        # Deliver feed events on the next loop iteration rather than inline,
        # the way a network feed would
        self.deferred_delivery = deferred_delivery
        self.latency = latency

    async def _round_trip(self) -> None:
        # Every call suspends at least once, like a request over the wire
        await asyncio.sleep(self.latency)

    @contextmanager
    def _call(self, operation: str):
        try:
            with session_scope(self.session_factory) as db:
                yield db
        except ProcedureError as e:
            logger.info(
                f"Backend rejected {operation}",
                extra={"extra_data": {"status_code": e.status_code, "detail": e.detail}}
            )
            raise BackendRejected(e.status_code, e.detail) from e
        except SQLAlchemyError as e:
            logger.error(f"Backend failure during {operation}: {e}")
            raise TransientNetworkError(str(e)) from e

    async def insert_message(self, draft: MessageDraft) -> MessageBase:
        await self._round_trip()
        with self._call("insert_message") as db:
            return procedures.insert_message(
                db,
                self.feed,
                draft,
                self.clock.now(),
                default_ttl_seconds=self.settings.default_ttl_seconds,
                max_ttl_seconds=self.settings.max_ttl_seconds,
            )

    async def mark_message_viewed(self, message_id: str, viewer_id: str) -> ViewResult:
        await self._round_trip()
        with self._call("mark_message_viewed") as db:
            return procedures.mark_message_viewed(
                db, self.feed, message_id, viewer_id, self.clock.now(), object_store=self.object_store
            )

    async def list_messages(
        self,
        conversation_id: str,
        viewer_id: str,
        since: Optional[datetime] = None,
    ) -> List[MessageBase]:
        await self._round_trip()
        with self._call("list_messages") as db:
            messages, _ = procedures.list_messages(
                db, conversation_id, viewer_id, self.clock.now(), since=since, limit=500
            )
            return messages

    async def mark_read(self, message_id: str, reader_id: str) -> bool:
        await self._round_trip()
        with self._call("mark_read") as db:
            return procedures.mark_read(db, self.feed, message_id, reader_id, self.clock.now())

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> int:
        await self._round_trip()
        with self._call("mark_conversation_read") as db:
            return procedures.mark_conversation_read(db, self.feed, conversation_id, reader_id, self.clock.now())

    async def upload_media(self, data: bytes, content_type: str) -> str:
        await self._round_trip()
        try:
            key = self.object_store.put(data, content_type)
        except ObjectStoreError as e:
            raise BackendRejected(415, str(e)) from e
        except OSError as e:
            raise TransientNetworkError(str(e)) from e
        return self.object_store.url_for(key)

    async def subscribe(
        self,
        conversation_id: str,
        handler: EventHandler,
        on_reconnect: Optional[ReconnectHandler] = None,
    ) -> Unsubscribe:
        # The in-process feed never drops, so on_reconnect is never called
        if self.deferred_delivery:
            loop = asyncio.get_running_loop()
            subscription = self.feed.subscribe(
                conversation_id, lambda event: loop.call_soon(handler, event)
            )
        else:
            subscription = self.feed.subscribe(conversation_id, handler)
        return subscription.close
