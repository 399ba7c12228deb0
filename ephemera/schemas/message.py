"""
Pydantic schemas for messages, change events and request/response validation.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class SendState(str, Enum):
    """Local-only delivery state of a message. Never persisted."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ViewAction(str, Enum):
    """What the mark-viewed procedure actually did."""
    DELETED = "deleted"
    ALREADY_GONE = "already-gone"
    NOT_APPLICABLE = "not-applicable"


class MessageBase(BaseModel):
    """Fields shared by every message variant."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    is_ephemeral: bool = False
    expires_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    is_read: bool = False
    created_at: datetime
    send_state: SendState = Field(default=SendState.SENT, exclude=True)

    model_config = {
        "from_attributes": True,
    }

    @property
    def is_pending(self) -> bool:
        return self.send_state == SendState.PENDING


class TextMessage(MessageBase):
    """Plain text message."""
    message_type: Literal["text"] = "text"
    content: str

    @property
    def payload(self) -> str:
        return self.content


class ImageMessage(MessageBase):
    """Photo stored in the object store, referenced by URL."""
    message_type: Literal["image"] = "image"
    media_ref: str
    content: Optional[str] = None

    @property
    def payload(self) -> str:
        return self.media_ref


class VideoMessage(MessageBase):
    """Video stored in the object store, referenced by URL."""
    message_type: Literal["video"] = "video"
    media_ref: str
    content: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def payload(self) -> str:
        return self.media_ref


Message = Annotated[
    Union[TextMessage, ImageMessage, VideoMessage],
    Field(discriminator="message_type"),
]

message_adapter = TypeAdapter(Message)


def parse_message(data) -> Union[TextMessage, ImageMessage, VideoMessage]:
    """Validate a row dictionary (or ORM object's ``to_dict()``) into its variant."""
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    return message_adapter.validate_python(data)


class MessageCreateRequest(BaseModel):
    """Body for POST /conversations/{id}/messages (conversation comes from the path)."""

    sender_id: str = Field(..., min_length=1, max_length=64)
    receiver_id: Optional[str] = Field(default=None, max_length=64)
    message_type: Literal["text", "image", "video"] = "text"
    content: Optional[str] = Field(default=None, max_length=4096)
    media_ref: Optional[str] = Field(default=None, max_length=2048)
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    is_ephemeral: bool = False
    expires_at: Optional[datetime] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "sender_id": "alice",
                "receiver_id": "bob",
                "message_type": "text",
                "content": "hello",
                "is_ephemeral": True,
                "expires_at": "2025-01-15T10:01:00Z",
            }
        }
    }

    @model_validator(mode="after")
    def check_payload(self):
        """Text needs content; media needs a reference."""
        if self.message_type == "text":
            if not self.content:
                raise ValueError("Text messages require non-empty content")
        elif not self.media_ref:
            raise ValueError(f"{self.message_type} messages require media_ref")
        return self

    def to_draft(self, conversation_id: str) -> "MessageDraft":
        return MessageDraft(conversation_id=conversation_id, **self.model_dump())


class MessageDraft(MessageCreateRequest):
    """A durable write as the client submits it."""
    conversation_id: str = Field(..., min_length=1, max_length=64)

    def to_request(self) -> MessageCreateRequest:
        return MessageCreateRequest(**self.model_dump(exclude={"conversation_id"}))


class ViewRequest(BaseModel):
    """Body for POST /messages/{id}/view."""
    viewer_id: str = Field(..., min_length=1, max_length=64)


class ReadRequest(BaseModel):
    """Body for the read-receipt endpoints."""
    reader_id: str = Field(..., min_length=1, max_length=64)


class ViewResult(BaseModel):
    """Result of the atomic mark-viewed-and-delete procedure."""
    action: ViewAction
    message_id: str
    prior_state: Optional[Message] = None


class ChangeEvent(BaseModel):
    """A row-level change published on a conversation's feed."""
    event: Literal["insert", "update", "delete"]
    conversation_id: str
    message_id: str
    record: Optional[Message] = None


class MessagesListResponse(BaseModel):
    """Response schema for GET /conversations/{id}/messages."""
    data: List[Message]
    total: int
    limit: int


class ReadResponse(BaseModel):
    """Response schema for the read-receipt endpoints."""
    updated: int


class MediaUploadResponse(BaseModel):
    """Response schema for POST /media."""
    key: str
    url: str
    content_type: str
    size: int


class HealthResponse(BaseModel):
    """Response schema for health endpoints."""
    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response schema."""
    detail: str
