"""
Conversation endpoints.
"""
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ephemera.api.deps import get_clock, http_error
from ephemera.core import procedures
from ephemera.core.clock import Clock
from ephemera.core.database import get_db
from ephemera.core.errors import ProcedureError
from ephemera.core.logging import get_logger
from ephemera.schemas.conversation import ConversationCreateRequest, ConversationResponse, LeaveRequest
from ephemera.schemas.message import ErrorResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.post(
    "",
    response_model=ConversationResponse,
    status_code=201,
    summary="Create conversation",
    description="Create a direct or group conversation. Direct conversations are reused."
)
async def create_conversation(
    payload: ConversationCreateRequest,
    db: Annotated[Session, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> ConversationResponse:
    conversation = procedures.create_conversation(
        db,
        payload.participant_ids,
        clock.now(),
        is_group=payload.is_group,
        name=payload.name,
    )
    return ConversationResponse.model_validate(conversation)


@router.get(
    "/{conversation_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown conversation"}},
    summary="Get conversation",
)
async def get_conversation(
    conversation_id: str,
    db: Annotated[Session, Depends(get_db)],
) -> ConversationResponse:
    try:
        conversation = procedures.get_conversation(db, conversation_id)
    except ProcedureError as e:
        raise http_error(e)
    return ConversationResponse.model_validate(conversation)


@router.post(
    "/{conversation_id}/leave",
    response_model=ConversationResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member"},
        404: {"model": ErrorResponse, "description": "Unknown conversation"},
        422: {"model": ErrorResponse, "description": "Not a group conversation"},
    },
    summary="Leave group conversation",
    description="Deactivate a member; later group sends no longer fan out to them."
)
async def leave_conversation(
    conversation_id: str,
    payload: LeaveRequest,
    db: Annotated[Session, Depends(get_db)],
) -> ConversationResponse:
    try:
        conversation = procedures.leave_conversation(db, conversation_id, payload.user_id)
    except ProcedureError as e:
        raise http_error(e)
    return ConversationResponse.model_validate(conversation)
