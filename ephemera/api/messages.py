"""
Message endpoints: durable writes, range and point queries, read receipts,
and the mark-viewed-and-delete procedure.
"""
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ephemera.api.deps import get_clock, get_feed, get_object_store, http_error
from ephemera.core import procedures
from ephemera.core.clock import Clock
from ephemera.core.config import Settings, get_settings
from ephemera.core.database import get_db
from ephemera.core.errors import ProcedureError
from ephemera.core.feed import ChangeFeed
from ephemera.core.logging import get_logger
from ephemera.core.object_store import LocalObjectStore
from ephemera.schemas.message import (
    ErrorResponse,
    Message,
    MessageCreateRequest,
    MessagesListResponse,
    ReadRequest,
    ReadResponse,
    ViewRequest,
    ViewResult,
)

logger = get_logger(__name__)

router = APIRouter(tags=["Messages"])

_errors = {
    403: {"model": ErrorResponse, "description": "Not a participant"},
    404: {"model": ErrorResponse, "description": "Unknown conversation or message"},
}


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=201,
    responses={**_errors, 422: {"model": ErrorResponse, "description": "Validation error"}},
    summary="Send message",
    description="Durably store a message. Group conversations fan out to every active member."
)
async def send_message(
    conversation_id: str,
    payload: MessageCreateRequest,
    db: Annotated[Session, Depends(get_db)],
    feed: Annotated[ChangeFeed, Depends(get_feed)],
    clock: Annotated[Clock, Depends(get_clock)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Store a message and publish it on the conversation feed.

    - Ephemeral messages without ``expires_at`` get the default TTL
    - ``expires_at`` beyond the maximum TTL is clamped
    """
    try:
        return procedures.insert_message(
            db,
            feed,
            payload.to_draft(conversation_id),
            clock.now(),
            default_ttl_seconds=settings.default_ttl_seconds,
            max_ttl_seconds=settings.max_ttl_seconds,
        )
    except ProcedureError as e:
        raise http_error(e)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses=_errors,
    summary="List messages",
    description="Messages of a conversation, oldest first. Consumed or expired ephemeral messages are never returned."
)
async def list_messages(
    conversation_id: str,
    db: Annotated[Session, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
    viewer_id: Annotated[str, Query(min_length=1, description="User reading the conversation")],
    since: Annotated[Optional[datetime], Query(description="Only messages created at or after this time")] = None,
    limit: Annotated[int, Query(ge=1, le=500, description="Number of messages to return")] = 100,
) -> MessagesListResponse:
    try:
        data, total = procedures.list_messages(
            db, conversation_id, viewer_id, clock.now(), since=since, limit=limit
        )
    except ProcedureError as e:
        raise http_error(e)

    logger.debug(
        "Listed messages",
        extra={
            "extra_data": {
                "conversation_id": conversation_id,
                "total": total,
                "returned": len(data),
            }
        }
    )
    return MessagesListResponse(data=data, total=total, limit=limit)


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=ReadResponse,
    responses=_errors,
    summary="Mark conversation read",
)
async def mark_conversation_read(
    conversation_id: str,
    payload: ReadRequest,
    db: Annotated[Session, Depends(get_db)],
    feed: Annotated[ChangeFeed, Depends(get_feed)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> ReadResponse:
    try:
        updated = procedures.mark_conversation_read(db, feed, conversation_id, payload.reader_id, clock.now())
    except ProcedureError as e:
        raise http_error(e)
    return ReadResponse(updated=updated)


@router.get(
    "/messages/{message_id}",
    response_model=Message,
    responses={404: {"model": ErrorResponse, "description": "Unknown, consumed or expired message"}},
    summary="Get message",
)
async def get_message(
    message_id: str,
    db: Annotated[Session, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
):
    try:
        return procedures.get_message(db, message_id, clock.now())
    except ProcedureError as e:
        raise http_error(e)


@router.post(
    "/messages/{message_id}/read",
    response_model=ReadResponse,
    summary="Mark message read",
    description="Delivery acknowledgement. Never consumes an ephemeral message."
)
async def mark_message_read(
    message_id: str,
    payload: ReadRequest,
    db: Annotated[Session, Depends(get_db)],
    feed: Annotated[ChangeFeed, Depends(get_feed)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> ReadResponse:
    changed = procedures.mark_read(db, feed, message_id, payload.reader_id, clock.now())
    return ReadResponse(updated=1 if changed else 0)


@router.post(
    "/messages/{message_id}/view",
    response_model=ViewResult,
    responses={403: {"model": ErrorResponse, "description": "Viewer is not a participant"}},
    summary="Mark viewed (and delete)",
    description="Atomic compare-and-delete. First viewer wins; later calls report already-gone."
)
async def mark_message_viewed(
    message_id: str,
    payload: ViewRequest,
    db: Annotated[Session, Depends(get_db)],
    feed: Annotated[ChangeFeed, Depends(get_feed)],
    clock: Annotated[Clock, Depends(get_clock)],
    store: Annotated[LocalObjectStore, Depends(get_object_store)],
) -> ViewResult:
    """
    Consume an ephemeral message.

    - ``deleted``: this call recorded the view and removed the row
    - ``already-gone``: the row was consumed or expired before
    - ``not-applicable``: not ephemeral, or the viewer is the sender
    """
    try:
        return procedures.mark_message_viewed(
            db, feed, message_id, payload.viewer_id, clock.now(), object_store=store
        )
    except ProcedureError as e:
        raise http_error(e)
