"""
Conversation-screen context object.

``ConversationSession`` owns everything one open conversation needs: the
local store, the countdown ticker, the feed subscription and the send and
view pipelines. Use it as an async context manager so every background
resource is released however the screen is left::

    async with ConversationSession(conversation_id, "alice", backend) as session:
        await session.send_message("hi", is_ephemeral=True)
"""
import asyncio
from dataclasses import dataclass
from typing import List, Optional, Set

from ephemera.client.backend import Backend
from ephemera.client.channel import RealtimeChannel
from ephemera.client.errors import EphemeraError
from ephemera.client.notices import (
    LOAD_FAILED,
    SUBSCRIBE_FAILED,
    UPLOAD_FAILED,
    Notice,
    Notify,
    log_notice,
)
from ephemera.client.pipeline import ComposeField, OptimisticSendPipeline, SendOutcome
from ephemera.client.scheduler import CountdownScheduler
from ephemera.client.store import LocalMessageStore
from ephemera.client.viewing import ViewAndDestroy
from ephemera.core.clock import Clock, SystemClock
from ephemera.core.config import Settings, get_settings
from ephemera.core.expiry import remaining
from ephemera.core.logging import get_logger
from ephemera.schemas.message import MessageBase, SendState, ViewAction

logger = get_logger(__name__)


@dataclass(frozen=True)
class DisplayedMessage:
    """A message as the conversation screen renders it."""
    message: MessageBase
    seconds_left: Optional[int]

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def send_state(self) -> SendState:
        return self.message.send_state


class ConversationSession:
    """One open conversation for one local user."""

    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        backend: Backend,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        notify: Optional[Notify] = None,
        receiver_id: Optional[str] = None,
    ):
        settings = settings or get_settings()
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.receiver_id = receiver_id
        self.backend = backend
        self.clock = clock or SystemClock()
        self.notify = notify or log_notice
        self.compose = ComposeField()

        self.store = LocalMessageStore(match_window_seconds=settings.match_window_seconds)
        self.scheduler = CountdownScheduler(
            self.store, self.clock, interval=settings.countdown_interval_seconds
        )
        self.channel = RealtimeChannel(
            conversation_id, backend, self.store, self.scheduler, user_id, self.clock,
            on_resync=self.resync,
        )
        self.pipeline = OptimisticSendPipeline(
            conversation_id,
            user_id,
            backend,
            self.store,
            self.scheduler,
            self.clock,
            default_ttl_seconds=settings.default_ttl_seconds,
            compose=self.compose,
            notify=self._notify,
        )
        self.viewer = ViewAndDestroy(user_id, backend, self.store, self.scheduler, notify=self._notify)
        self._sends: Set[asyncio.Task] = set()
        self._opened = False

    def _notify(self, notice: Notice) -> None:
        try:
            self.notify(notice)
        except Exception:
            logger.exception("Notice callback failed")

    @property
    def is_open(self) -> bool:
        return self._opened

    async def __aenter__(self) -> "ConversationSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """
        Subscribe, load history, then start the countdown ticker.

        Subscribing first means nothing written while the history loads is
        missed; the store merges the overlap. Backend failures are reported
        through ``notify`` and leave the session usable. Anything else,
        cancellation included, closes the session again before propagating.
        """
        if self._opened:
            return
        self._opened = True

        try:
            try:
                await self.channel.open()
            except EphemeraError as e:
                logger.warning(f"Subscription failed: {e}")
                self._notify(Notice(SUBSCRIBE_FAILED, "Live updates are unavailable right now."))

            await self.reload()
            self.scheduler.open()
        except BaseException:
            await self.close()
            raise
        logger.info(
            "Conversation session opened",
            extra={"extra_data": {
                "conversation_id": self.conversation_id,
                "user_id": self.user_id,
                "messages": len(self.store),
            }}
        )

    async def reload(self, prune: bool = False) -> None:
        """
        Fetch reachable history and acknowledge incoming messages.

        With ``prune``, confirmed messages the server no longer lists are
        removed as well.
        """
        try:
            history = await self.backend.list_messages(self.conversation_id, self.user_id)
        except EphemeraError as e:
            logger.warning(f"Loading messages failed: {e}")
            self._notify(Notice(LOAD_FAILED, "Could not load messages."))
            return

        if prune:
            for message_id in self.store.prune({m.id for m in history}):
                self.scheduler.cancel(message_id)

        for message in history:
            self.store.upsert_from_remote(message)
            if message.expires_at is not None and message.id in self.store:
                self.scheduler.start(message)
        await self.mark_all_read()

    async def resync(self) -> None:
        """Catch up after the feed reconnects; deletes missed meanwhile are applied."""
        await self.reload(prune=True)

    async def close(self) -> None:
        """Release the ticker, the subscription and any in-flight sends."""
        if not self._opened:
            return
        self._opened = False

        sends, self._sends = self._sends, set()
        for task in sends:
            task.cancel()
        if sends:
            await asyncio.gather(*sends, return_exceptions=True)

        await self.scheduler.close()
        await self.channel.close()
        logger.info(
            "Conversation session closed",
            extra={"extra_data": {"conversation_id": self.conversation_id, "user_id": self.user_id}}
        )

    async def send_message(
        self,
        content: Optional[str] = None,
        *,
        is_ephemeral: bool = False,
        ttl_seconds: Optional[int] = None,
        message_type: str = "text",
        media_ref: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> SendOutcome:
        """Send ``content`` (the compose field's text when omitted)."""
        if content is None and message_type == "text":
            content = self.compose.text
        return await self.pipeline.send(
            content,
            message_type=message_type,
            media_ref=media_ref,
            duration_seconds=duration_seconds,
            receiver_id=self.receiver_id,
            is_ephemeral=is_ephemeral,
            ttl_seconds=ttl_seconds,
        )

    async def send_media(
        self,
        data: bytes,
        content_type: str,
        *,
        caption: Optional[str] = None,
        is_ephemeral: bool = False,
        ttl_seconds: Optional[int] = None,
        duration_seconds: Optional[float] = None,
    ) -> Optional[SendOutcome]:
        """Upload a photo or video, then send it. Returns None if the upload failed."""
        try:
            url = await self.backend.upload_media(data, content_type)
        except EphemeraError as e:
            logger.warning(f"Media upload failed: {e}")
            self._notify(Notice(UPLOAD_FAILED, "Could not upload the attachment."))
            return None

        message_type = "video" if content_type.startswith("video/") else "image"
        return await self.send_message(
            caption,
            is_ephemeral=is_ephemeral,
            ttl_seconds=ttl_seconds,
            message_type=message_type,
            media_ref=url,
            duration_seconds=duration_seconds,
        )

    def post_message(self, content: Optional[str] = None, **kwargs) -> asyncio.Task:
        """Fire-and-forget ``send_message``; the task is cancelled on close."""
        task = asyncio.get_running_loop().create_task(self.send_message(content, **kwargs))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        return task

    async def view_message(self, message_id: str) -> Optional[ViewAction]:
        return await self.viewer.view(message_id)

    async def mark_all_read(self) -> int:
        try:
            return await self.backend.mark_conversation_read(self.conversation_id, self.user_id)
        except EphemeraError as e:
            logger.warning(f"Marking conversation read failed: {e}")
            return 0

    def messages(self) -> List[DisplayedMessage]:
        """The store in display order, with each countdown's current value."""
        now = self.clock.now()
        displayed = []
        for message in self.store:
            if self.scheduler.is_tracking(message.id):
                seconds_left = self.scheduler.seconds_left(message.id)
            else:
                seconds_left = remaining(message, now).seconds_left
            displayed.append(DisplayedMessage(message=message, seconds_left=seconds_left))
        return displayed
