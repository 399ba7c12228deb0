"""
User-visible notifications raised by the client core.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from ephemera.core.logging import get_logger

logger = get_logger(__name__)

SEND_FAILED = "send-failed"
VIEW_FAILED = "view-failed"
UPLOAD_FAILED = "upload-failed"
LOAD_FAILED = "load-failed"
SUBSCRIBE_FAILED = "subscribe-failed"
INVALID_MESSAGE = "invalid-message"


@dataclass(frozen=True)
class Notice:
    kind: str
    text: str
    message_id: Optional[str] = None


Notify = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    """Default sink when the UI layer has not registered one."""
    logger.warning(
        notice.text,
        extra={"extra_data": {"kind": notice.kind, "message_id": notice.message_id}}
    )
