"""
Local message store: the ordered, keyed list a conversation screen renders.

Only ever touched from the event loop thread, so there is no locking.
"""
from datetime import timedelta
from typing import Callable, Dict, Iterator, List, Optional, Set

from ephemera.core.logging import get_logger
from ephemera.schemas.message import MessageBase

logger = get_logger(__name__)

UPDATED = "updated"
RECONCILED = "reconciled"
APPENDED = "appended"
IGNORED = "ignored"


class LocalMessageStore:
    """
    Insertion-ordered messages of one conversation.

    Pending (optimistic) entries carry their correlation id as ``id`` until
    they are swapped for the confirmed server record.
    """

    def __init__(self, match_window_seconds: float = 120.0):
        self._messages: List[MessageBase] = []
        self._index: Dict[str, int] = {}
        # Ids removed during this session; a consumed message never comes back
        self._removed: Set[str] = set()
        self.match_window = timedelta(seconds=match_window_seconds)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[MessageBase]:
        return iter(list(self._messages))

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._index

    def get(self, message_id: str) -> Optional[MessageBase]:
        position = self._index.get(message_id)
        return None if position is None else self._messages[position]

    def ids(self) -> List[str]:
        return [m.id for m in self._messages]

    def snapshot(self) -> List[MessageBase]:
        return list(self._messages)

    def pending(self) -> List[MessageBase]:
        return [m for m in self._messages if m.is_pending]

    def insert(self, message: MessageBase) -> bool:
        """
        Append a message. Returns False (and does nothing) if the id is
        present or was removed earlier.
        """
        if message.id in self._index or message.id in self._removed:
            return False
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        return True

    def replace_by_correlation(
        self,
        predicate: Callable[[MessageBase], bool],
        new_message: MessageBase,
    ) -> bool:
        """Replace the first entry matching ``predicate``, keeping its position."""
        for position, current in enumerate(self._messages):
            if predicate(current):
                self._put(position, new_message)
                return True
        return False

    def remove(self, message_id: str) -> bool:
        """Delete by id. Removing an absent id is a normal no-op."""
        self._removed.add(message_id)
        position = self._index.get(message_id)
        if position is None:
            return False
        del self._messages[position]
        self._reindex()
        return True

    def was_removed(self, message_id: str) -> bool:
        return message_id in self._removed

    def prune(self, live_ids: Set[str]) -> List[str]:
        """
        Remove every confirmed message whose id is not in ``live_ids``.

        Pending entries are kept. Returns the removed ids.
        """
        stale = [m.id for m in self._messages if not m.is_pending and m.id not in live_ids]
        for message_id in stale:
            self.remove(message_id)
        return stale

    def upsert_from_remote(self, message: MessageBase) -> str:
        """
        Merge a server record without ever showing a message twice.

        Same id: replaced in place. Otherwise the first pending entry from
        the same sender with the same payload, created within the match
        window, is taken to be its optimistic copy and replaced. Anything
        else is appended. Records removed earlier are ignored.
        """
        if message.id in self._removed:
            return IGNORED

        position = self._index.get(message.id)
        if position is not None:
            self._put(position, message)
            return UPDATED

        for position, current in enumerate(self._messages):
            if self._is_optimistic_copy(current, message):
                logger.debug(
                    "Reconciled pending message with server record",
                    extra={"extra_data": {"correlation_id": current.id, "message_id": message.id}}
                )
                self._put(position, message)
                return RECONCILED

        self.insert(message)
        return APPENDED

    def _is_optimistic_copy(self, candidate: MessageBase, record: MessageBase) -> bool:
        return (
            candidate.is_pending
            and candidate.sender_id == record.sender_id
            and candidate.message_type == record.message_type
            and candidate.payload == record.payload
            and abs(candidate.created_at - record.created_at) <= self.match_window
        )

    def _put(self, position: int, message: MessageBase) -> None:
        old_id = self._messages[position].id
        if message.id != old_id and (message.id in self._index or message.id in self._removed):
            # The record is already listed elsewhere or was consumed; drop the stale slot
            del self._messages[position]
            self._reindex()
            return
        self._messages[position] = message
        if message.id != old_id:
            del self._index[old_id]
            self._index[message.id] = position

    def _reindex(self) -> None:
        self._index = {m.id: i for i, m in enumerate(self._messages)}
