"""
Pydantic schemas for conversations.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ParticipantResponse(BaseModel):
    """A conversation member."""
    user_id: str
    is_active: bool = True
    joined_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }


class ConversationCreateRequest(BaseModel):
    """Request schema for POST /conversations."""

    participant_ids: List[str] = Field(..., min_length=2, max_length=256)
    is_group: bool = False
    name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("participant_ids")
    @classmethod
    def dedupe_participants(cls, v: List[str]) -> List[str]:
        """Drop blanks and duplicates, keep order."""
        seen = []
        for user_id in v:
            user_id = user_id.strip()
            if user_id and user_id not in seen:
                seen.append(user_id)
        return seen

    @model_validator(mode="after")
    def check_shape(self) -> "ConversationCreateRequest":
        if len(self.participant_ids) < 2:
            raise ValueError("A conversation needs at least two distinct participants")
        if not self.is_group and len(self.participant_ids) != 2:
            raise ValueError("Direct conversations have exactly two participants")
        return self


class LeaveRequest(BaseModel):
    """Request schema for POST /conversations/{id}/leave."""
    user_id: str = Field(..., min_length=1, max_length=64)


class ConversationResponse(BaseModel):
    """Response schema for a conversation."""
    id: str
    is_group: bool
    name: Optional[str] = None
    created_at: datetime
    participants: List[ParticipantResponse]

    model_config = {
        "from_attributes": True,
    }
