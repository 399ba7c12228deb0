"""
Conversation database models.
"""
import uuid

from sqlalchemy import Boolean, Column, ForeignKey, String
from sqlalchemy.orm import relationship

from ephemera.core.database import Base, UTCDateTime
from ephemera.models.message import utcnow


class Conversation(Base):
    """A 1:1 or group conversation."""

    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    is_group = Column(Boolean, nullable=False, default=False)
    name = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, is_group={self.is_group})>"

    def active_user_ids(self) -> list:
        return [p.user_id for p in self.participants if p.is_active]

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.active_user_ids()


class ConversationParticipant(Base):
    """Membership row; group members carry an ``is_active`` flag."""

    __tablename__ = "conversation_participants"

    conversation_id = Column(
        String(64),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String(64), primary_key=True)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="participants")

    def __repr__(self) -> str:
        return f"<ConversationParticipant(conversation_id={self.conversation_id}, user_id={self.user_id})>"
