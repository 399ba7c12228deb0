"""
Server-side procedures over the message store.

These are the only code paths that mutate message rows. Each one commits its
own transaction and publishes the resulting change events on the feed after
the commit succeeds.
"""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ephemera.core import metrics
from ephemera.core.errors import ConversationNotFound, InvalidMessage, MessageNotFound, NotAParticipant
from ephemera.core.expiry import is_reachable
from ephemera.core.feed import ChangeFeed
from ephemera.core.logging import get_logger
from ephemera.core.object_store import LocalObjectStore
from ephemera.models.conversation import Conversation, ConversationParticipant
from ephemera.models.message import Message, MessageReceipt, MessageView
from ephemera.schemas.message import ChangeEvent, MessageDraft, ViewAction, ViewResult, parse_message

logger = get_logger(__name__)


# -- conversations -----------------------------------------------------------

def create_conversation(
    db: Session,
    participant_ids: Iterable[str],
    now: datetime,
    is_group: bool = False,
    name: Optional[str] = None,
) -> Conversation:
    """
    Create a conversation.

    A direct conversation between two users is reused if one already exists.
    """
    participant_ids = list(participant_ids)

    if not is_group:
        existing = _find_direct_conversation(db, participant_ids)
        if existing is not None:
            return existing

    conversation = Conversation(is_group=is_group, name=name, created_at=now)
    conversation.participants = [
        ConversationParticipant(user_id=user_id, is_active=True, joined_at=now)
        for user_id in participant_ids
    ]
    db.add(conversation)
    db.commit()
    db.refresh(conversation)

    logger.info(
        "Conversation created",
        extra={
            "extra_data": {
                "conversation_id": conversation.id,
                "is_group": is_group,
                "participants": len(participant_ids),
            }
        }
    )
    return conversation


def _find_direct_conversation(db: Session, participant_ids: List[str]) -> Optional[Conversation]:
    candidates = (
        db.query(ConversationParticipant.conversation_id)
        .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
        .filter(Conversation.is_group.is_(False))
        .filter(ConversationParticipant.user_id.in_(participant_ids))
        .group_by(ConversationParticipant.conversation_id)
        .having(func.count(ConversationParticipant.user_id) == len(participant_ids))
        .first()
    )
    if candidates is None:
        return None
    return db.get(Conversation, candidates[0])


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise ConversationNotFound(f"Conversation not found: {conversation_id}")
    return conversation


def leave_conversation(db: Session, conversation_id: str, user_id: str) -> Conversation:
    """Mark a group member inactive so future sends no longer fan out to them."""
    conversation = get_conversation(db, conversation_id)
    if not conversation.is_group:
        raise InvalidMessage("Only group conversations can be left")

    for participant in conversation.participants:
        if participant.user_id == user_id:
            participant.is_active = False
            db.commit()
            db.refresh(conversation)
            logger.info(
                "Participant left conversation",
                extra={"extra_data": {"conversation_id": conversation_id, "user_id": user_id}}
            )
            return conversation

    raise NotAParticipant(f"{user_id} is not a member of {conversation_id}")


# -- durable writes ----------------------------------------------------------

def _resolve_expiry(draft: MessageDraft, now: datetime, default_ttl_seconds: int, max_ttl_seconds: int):
    if not draft.is_ephemeral:
        return None

    latest = now + timedelta(seconds=max_ttl_seconds)
    if draft.expires_at is None:
        return min(now + timedelta(seconds=default_ttl_seconds), latest)
    if draft.expires_at <= now:
        raise InvalidMessage("expires_at is already in the past")
    return min(draft.expires_at, latest)


def insert_message(
    db: Session,
    feed: ChangeFeed,
    draft: MessageDraft,
    now: datetime,
    default_ttl_seconds: int = 60,
    max_ttl_seconds: int = 86400,
):
    """
    Durably store a message and publish its insert event.

    Group conversations take the fan-out path: one row with no receiver plus
    one unread receipt per active participant other than the sender, written
    in the same transaction.
    """
    conversation = get_conversation(db, draft.conversation_id)
    if not conversation.is_participant(draft.sender_id):
        raise NotAParticipant(f"{draft.sender_id} cannot post to {draft.conversation_id}")

    receiver_id = None
    recipients: List[str] = []
    if conversation.is_group:
        recipients = [uid for uid in conversation.active_user_ids() if uid != draft.sender_id]
    else:
        others = [uid for uid in conversation.active_user_ids() if uid != draft.sender_id]
        receiver_id = draft.receiver_id or (others[0] if others else None)
        if receiver_id is None or receiver_id not in others:
            raise NotAParticipant(f"{draft.receiver_id} is not the other participant of {draft.conversation_id}")

    row = Message(
        conversation_id=draft.conversation_id,
        sender_id=draft.sender_id,
        receiver_id=receiver_id,
        message_type=draft.message_type,
        content=draft.content,
        media_ref=draft.media_ref,
        duration_seconds=draft.duration_seconds,
        is_ephemeral=draft.is_ephemeral,
        expires_at=_resolve_expiry(draft, now, default_ttl_seconds, max_ttl_seconds),
        is_read=False,
        created_at=now,
    )
    db.add(row)
    db.flush()

    for user_id in recipients:
        db.add(MessageReceipt(message_id=row.id, user_id=user_id, is_read=False))

    db.commit()
    message = parse_message(row)

    metrics.record_event("messages_sent_total")
    logger.info(
        "Message stored",
        extra={
            "extra_data": {
                "message_id": message.id,
                "conversation_id": message.conversation_id,
                "sender_id": message.sender_id,
                "is_ephemeral": message.is_ephemeral,
                "fan_out": len(recipients),
            }
        }
    )

    feed.publish(ChangeEvent(
        event="insert",
        conversation_id=message.conversation_id,
        message_id=message.id,
        record=message,
    ))
    return message


# -- reads -------------------------------------------------------------------

def _reachable_filter(now: datetime):
    # Malformed ephemeral rows (no expires_at) count as non-expiring
    return or_(
        Message.is_ephemeral.is_(False),
        and_(
            Message.viewed_at.is_(None),
            or_(Message.expires_at.is_(None), Message.expires_at > now),
        ),
    )


def list_messages(
    db: Session,
    conversation_id: str,
    viewer_id: str,
    now: datetime,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> Tuple[list, int]:
    """
    Range query by conversation and time, oldest first.

    Expired or consumed ephemeral rows are never returned. For group messages
    ``is_read`` reflects the viewer's own receipt.
    """
    conversation = get_conversation(db, conversation_id)
    if viewer_id not in [p.user_id for p in conversation.participants]:
        raise NotAParticipant(f"{viewer_id} cannot read {conversation_id}")

    query = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .filter(_reachable_filter(now))
    )
    if since is not None:
        query = query.filter(Message.created_at >= since)

    total = query.count()
    rows = query.order_by(Message.created_at.asc(), Message.id.asc()).limit(limit).all()

    receipts = {}
    group_ids = [row.id for row in rows if row.receiver_id is None]
    if group_ids:
        receipts = {
            r.message_id: r.is_read
            for r in db.query(MessageReceipt).filter(
                MessageReceipt.message_id.in_(group_ids),
                MessageReceipt.user_id == viewer_id,
            )
        }

    messages = []
    for row in rows:
        data = row.to_dict()
        if row.receiver_id is None and row.id in receipts:
            data["is_read"] = receipts[row.id]
        messages.append(parse_message(data))

    return messages, total


def get_message(db: Session, message_id: str, now: datetime):
    """Point query. Unreachable messages are reported as not found."""
    row = db.get(Message, message_id)
    if row is None:
        raise MessageNotFound(f"Message not found: {message_id}")
    message = parse_message(row)
    if not is_reachable(message, now):
        raise MessageNotFound(f"Message not found: {message_id}")
    return message


# -- view and destroy --------------------------------------------------------

def mark_message_viewed(
    db: Session,
    feed: ChangeFeed,
    message_id: str,
    viewer_id: str,
    now: datetime,
    object_store: Optional[LocalObjectStore] = None,
) -> ViewResult:
    """
    Atomically record a view of an ephemeral message and delete it.

    The delete is conditional on the row still being present and unviewed,
    so of any number of concurrent callers exactly one gets ``deleted``; the
    rest get ``already-gone``. Non-ephemeral messages and views by the sender
    are ``not-applicable`` and change nothing.

    With an ``object_store``, the blob behind an image or video is deleted
    once the row is.
    """
    row = db.get(Message, message_id)
    if row is None:
        return _view_result(ViewAction.ALREADY_GONE, message_id)

    prior = parse_message(row)
    if not prior.is_ephemeral or prior.sender_id == viewer_id:
        return _view_result(ViewAction.NOT_APPLICABLE, message_id, prior)

    conversation = get_conversation(db, prior.conversation_id)
    if not conversation.is_participant(viewer_id):
        raise NotAParticipant(f"{viewer_id} cannot view messages in {prior.conversation_id}")
    if prior.receiver_id is not None and prior.receiver_id != viewer_id:
        return _view_result(ViewAction.NOT_APPLICABLE, message_id, prior)

    if not is_reachable(prior, now):
        # TTL-expired rows belong to housekeeping
        return _view_result(ViewAction.ALREADY_GONE, message_id)

    db.execute(delete(MessageReceipt).where(MessageReceipt.message_id == message_id))
    result = db.execute(
        delete(Message)
        .where(Message.id == message_id, Message.viewed_at.is_(None))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return _view_result(ViewAction.ALREADY_GONE, message_id)

    db.add(MessageView(
        message_id=message_id,
        conversation_id=prior.conversation_id,
        viewer_id=viewer_id,
        viewed_at=now,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Another transaction recorded the view first
        db.rollback()
        return _view_result(ViewAction.ALREADY_GONE, message_id)

    logger.info(
        "Ephemeral message viewed and deleted",
        extra={
            "extra_data": {
                "message_id": message_id,
                "conversation_id": prior.conversation_id,
                "viewer_id": viewer_id,
            }
        }
    )
    feed.publish(ChangeEvent(
        event="delete",
        conversation_id=prior.conversation_id,
        message_id=message_id,
    ))
    if object_store is not None:
        object_store.discard(getattr(prior, "media_ref", None))
    return _view_result(ViewAction.DELETED, message_id, prior)


def _view_result(action: ViewAction, message_id: str, prior=None) -> ViewResult:
    metrics.record_event("messages_view_total", {"action": action.value})
    return ViewResult(action=action, message_id=message_id, prior_state=prior)


# -- read receipts -----------------------------------------------------------

def mark_read(db: Session, feed: ChangeFeed, message_id: str, reader_id: str, now: datetime) -> bool:
    """
    Acknowledge delivery of one message. Returns False if nothing changed.

    This is ordinary read bookkeeping; it never consumes ephemeral messages.
    """
    row = db.get(Message, message_id)
    if row is None or row.sender_id == reader_id:
        return False

    if row.receiver_id is None:
        receipt = db.get(MessageReceipt, (message_id, reader_id))
        if receipt is None or receipt.is_read:
            return False
        receipt.is_read = True
        receipt.read_at = now
        db.commit()
        return True

    if row.receiver_id != reader_id or row.is_read:
        return False

    row.is_read = True
    row.read_at = now
    db.commit()
    message = parse_message(row)
    feed.publish(ChangeEvent(
        event="update",
        conversation_id=message.conversation_id,
        message_id=message.id,
        record=message,
    ))
    return True


def mark_conversation_read(
    db: Session,
    feed: ChangeFeed,
    conversation_id: str,
    reader_id: str,
    now: datetime,
) -> int:
    """Mark every unread incoming message of a conversation as read."""
    get_conversation(db, conversation_id)

    rows = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.receiver_id == reader_id,
            Message.is_read.is_(False),
        )
        .all()
    )
    for row in rows:
        row.is_read = True
        row.read_at = now

    receipts = db.execute(
        update(MessageReceipt)
        .where(
            MessageReceipt.user_id == reader_id,
            MessageReceipt.is_read.is_(False),
            MessageReceipt.message_id.in_(
                select(Message.id).where(Message.conversation_id == conversation_id)
            ),
        )
        .values(is_read=True, read_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    for row in rows:
        message = parse_message(row)
        feed.publish(ChangeEvent(
            event="update",
            conversation_id=conversation_id,
            message_id=message.id,
            record=message,
        ))

    return len(rows) + (receipts.rowcount or 0)


# -- housekeeping ------------------------------------------------------------

def sweep_expired(
    db: Session,
    feed: ChangeFeed,
    now: datetime,
    batch_size: int = 500,
    object_store: Optional[LocalObjectStore] = None,
) -> int:
    """
    Delete ephemeral messages whose TTL has run out and publish their deletes.

    Uses the same conditional delete as viewing, so a sweep racing a view
    removes each row only once.
    """
    candidates = (
        db.query(Message.id, Message.conversation_id, Message.media_ref)
        .filter(
            Message.is_ephemeral.is_(True),
            Message.expires_at.is_not(None),
            Message.expires_at <= now,
        )
        .limit(batch_size)
        .all()
    )
    if not candidates:
        return 0

    removed = []
    for message_id, conversation_id, media_ref in candidates:
        db.execute(delete(MessageReceipt).where(MessageReceipt.message_id == message_id))
        result = db.execute(
            delete(Message)
            .where(Message.id == message_id, Message.viewed_at.is_(None), Message.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            removed.append((message_id, conversation_id, media_ref))
    db.commit()

    for message_id, conversation_id, media_ref in removed:
        feed.publish(ChangeEvent(event="delete", conversation_id=conversation_id, message_id=message_id))
        if object_store is not None:
            object_store.discard(media_ref)

    if removed:
        metrics.record_event("messages_swept_total", amount=len(removed))
        logger.info("Expired messages swept", extra={"extra_data": {"removed": len(removed)}})
    return len(removed)
