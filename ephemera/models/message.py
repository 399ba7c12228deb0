"""
Message database models.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Float, ForeignKey, Index, Integer, String, Text

from ephemera.core.database import Base, UTCDateTime


def new_message_id() -> str:
    """Server-assigned message id (never collides with ``temp-`` correlation ids)."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(Base):
    """A stored message row. Ephemeral rows are deleted when consumed."""

    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, default=new_message_id)

    conversation_id = Column(
        String(64),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id = Column(String(64), nullable=False, index=True)
    # Null for group messages (fan-out goes through MessageReceipt)
    receiver_id = Column(String(64), nullable=True, index=True)

    message_type = Column(String(16), nullable=False, default="text")
    content = Column(Text, nullable=True)
    media_ref = Column(String(2048), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    is_ephemeral = Column(Boolean, nullable=False, default=False)
    expires_at = Column(UTCDateTime(), nullable=True, index=True)
    viewed_at = Column(UTCDateTime(), nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    # Range queries by conversation + time
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, conversation_id={self.conversation_id}, sender_id={self.sender_id})>"

    def to_dict(self) -> dict:
        """Convert model to the wire dictionary."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "message_type": self.message_type,
            "content": self.content,
            "media_ref": self.media_ref,
            "duration_seconds": self.duration_seconds,
            "is_ephemeral": bool(self.is_ephemeral),
            "expires_at": self.expires_at,
            "viewed_at": self.viewed_at,
            "is_read": bool(self.is_read),
            "created_at": self.created_at,
        }


class MessageReceipt(Base):
    """Per-recipient read model for group messages."""

    __tablename__ = "message_receipts"

    message_id = Column(
        String(64),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String(64), primary_key=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<MessageReceipt(message_id={self.message_id}, user_id={self.user_id})>"


class MessageView(Base):
    """Durable record of an ephemeral message being consumed."""

    __tablename__ = "message_views"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Unique: a message is consumed at most once
    message_id = Column(String(64), nullable=False, unique=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    viewer_id = Column(String(64), nullable=False)
    viewed_at = Column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<MessageView(message_id={self.message_id}, viewer_id={self.viewer_id})>"
