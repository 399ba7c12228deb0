"""
Optimistic send pipeline.

A message shows up in the local store the moment it is sent, marked
pending under a client-generated correlation id. When the durable write
returns, the pending entry is swapped for the confirmed record; when it
fails, the entry is withdrawn and the typed text goes back into the
compose field.
"""
import itertools
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError

from ephemera.client.backend import Backend
from ephemera.client.errors import EphemeraError
from ephemera.client.notices import INVALID_MESSAGE, SEND_FAILED, Notice, Notify, log_notice
from ephemera.client.scheduler import CountdownScheduler
from ephemera.client.store import LocalMessageStore
from ephemera.core.clock import Clock
from ephemera.core.logging import get_logger
from ephemera.schemas.message import MessageBase, MessageDraft, SendState, parse_message

logger = get_logger(__name__)


class ComposeField:
    """The text the user is typing."""

    def __init__(self, text: str = ""):
        self.text = text

    def clear(self) -> None:
        self.text = ""


@dataclass
class SendOutcome:
    correlation_id: str
    message: Optional[MessageBase] = None
    error: Optional[Exception] = None
    restored_content: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OptimisticSendPipeline:
    """Sends one conversation's messages for one local user."""

    def __init__(
        self,
        conversation_id: str,
        sender_id: str,
        backend: Backend,
        store: LocalMessageStore,
        scheduler: CountdownScheduler,
        clock: Clock,
        default_ttl_seconds: int = 60,
        compose: Optional[ComposeField] = None,
        notify: Optional[Notify] = None,
    ):
        self.conversation_id = conversation_id
        self.sender_id = sender_id
        self.backend = backend
        self.store = store
        self.scheduler = scheduler
        self.clock = clock
        self.default_ttl_seconds = default_ttl_seconds
        self.compose = compose or ComposeField()
        self.notify = notify or log_notice
        self._sequence = itertools.count(1)

    def next_correlation_id(self) -> str:
        """``temp-<epoch-ms>-<seq>``; never collides with a server id."""
        epoch_ms = int(self.clock.now().timestamp() * 1000)
        return f"temp-{epoch_ms}-{next(self._sequence)}"

    async def send(
        self,
        content: Optional[str] = None,
        *,
        message_type: str = "text",
        media_ref: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        receiver_id: Optional[str] = None,
        is_ephemeral: bool = False,
        ttl_seconds: Optional[int] = None,
    ) -> SendOutcome:
        now = self.clock.now()
        correlation_id = self.next_correlation_id()
        expires_at = None
        if is_ephemeral:
            expires_at = now + timedelta(seconds=ttl_seconds or self.default_ttl_seconds)

        try:
            draft = MessageDraft(
                conversation_id=self.conversation_id,
                sender_id=self.sender_id,
                receiver_id=receiver_id,
                message_type=message_type,
                content=content,
                media_ref=media_ref,
                duration_seconds=duration_seconds,
                is_ephemeral=is_ephemeral,
                expires_at=expires_at,
            )
        except ValidationError as e:
            self.notify(Notice(INVALID_MESSAGE, "Message could not be sent: it is empty or invalid"))
            return SendOutcome(correlation_id=correlation_id, error=e)

        provisional = parse_message({
            **draft.model_dump(),
            "id": correlation_id,
            "created_at": now,
            "send_state": SendState.PENDING,
        })
        self.store.insert(provisional)
        if message_type == "text" and self.compose.text == content:
            self.compose.clear()

        try:
            confirmed = await self.backend.insert_message(draft)
        except EphemeraError as e:
            return self._rollback(correlation_id, content if message_type == "text" else None, e)

        if not self.store.replace_by_correlation(lambda m: m.id == correlation_id, confirmed):
            # The change feed got there first and already reconciled the entry
            self.store.insert(confirmed)
        if confirmed.expires_at is not None and confirmed.id in self.store:
            self.scheduler.start(confirmed)

        logger.info(
            "Message sent",
            extra={"extra_data": {
                "correlation_id": correlation_id,
                "message_id": confirmed.id,
                "conversation_id": self.conversation_id,
                "message_type": confirmed.message_type,
                "is_ephemeral": confirmed.is_ephemeral,
            }}
        )
        return SendOutcome(correlation_id=correlation_id, message=confirmed)

    def _rollback(self, correlation_id: str, content: Optional[str], error: Exception) -> SendOutcome:
        self.store.remove(correlation_id)
        if content is not None:
            self.compose.text = content
        logger.warning(
            "Message send failed",
            extra={"extra_data": {"correlation_id": correlation_id, "error": str(error)}}
        )
        self.notify(Notice(SEND_FAILED, "Message failed to send. Please try again.", correlation_id))
        return SendOutcome(correlation_id=correlation_id, error=error, restored_content=content)
