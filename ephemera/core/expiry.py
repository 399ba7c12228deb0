"""
Expiry policy: remaining lifetime and reachability of a message.

Pure functions. The caller always supplies ``now``.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ephemera.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Remaining:
    """Derived lifetime of a message at a given instant."""
    is_expired: bool
    seconds_left: Optional[int]


NOT_EXPIRING = Remaining(is_expired=False, seconds_left=None)


def remaining(message, now: datetime) -> Remaining:
    """
    Compute how long an ephemeral message has left.

    Non-ephemeral messages and messages without ``expires_at`` never expire.
    An ephemeral message without ``expires_at`` is a malformed record: it is
    treated as non-expiring and logged.
    """
    if not message.is_ephemeral:
        return NOT_EXPIRING

    if message.expires_at is None:
        logger.warning(
            "Malformed record: ephemeral message without expires_at",
            extra={"extra_data": {"message_id": message.id}}
        )
        return NOT_EXPIRING

    seconds_left = max(0, math.floor((message.expires_at - now).total_seconds()))
    return Remaining(is_expired=seconds_left == 0, seconds_left=seconds_left)


def is_reachable(message, now: datetime) -> bool:
    """
    Whether a client read path may return this message.

    Expired ephemeral messages, and ephemeral messages already viewed by
    someone other than their sender, are gone for good.
    """
    if not message.is_ephemeral:
        return True
    if message.viewed_at is not None:
        return False
    return not remaining(message, now).is_expired
