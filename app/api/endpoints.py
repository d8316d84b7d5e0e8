"""API endpoints for the calendar assistant."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app import __version__
from app.api.dependencies import get_approval_registry, get_calendar_selector, get_conversation_service
from app.models.conversation import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    CalendarMappingResponse,
    ChatRequest,
    HealthResponse,
)
from app.services.approvals import ApprovalRegistry
from app.services.calendar_selector import CalendarSelector
from app.services.conversation import ConversationService
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/chat", tags=["Chat"], response_class=StreamingResponse)
async def chat(
    request: ChatRequest,
    service: Annotated[ConversationService, Depends(get_conversation_service)],
) -> StreamingResponse:
    """Run a chat turn and stream it as Server-Sent Events.

    Events: ``conversation``, ``text``, ``tool_use``, ``tool_approval_requested``,
    ``tool_complete``, ``done`` and ``error``.
    """
    try:
        logger.info(f"Chat message from user {request.user_id}: {request.message[:50]}...")
        turn = service.start_turn(request)
    except ValueError as e:
        logger.warning(f"Chat request rejected for user {request.user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    return StreamingResponse(
        service.stream_turn(turn),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/approvals/{approval_id}", response_model=ApprovalDecisionResponse, tags=["Approvals"])
async def decide_approval(
    approval_id: str,
    request: ApprovalDecisionRequest,
    approvals: Annotated[ApprovalRegistry, Depends(get_approval_registry)],
) -> ApprovalDecisionResponse:
    """Approve or reject a pending tool call."""
    try:
        decision = approvals.decide(approval_id, request.approved)
    except KeyError as e:
        logger.warning(f"Decision for unknown or expired approval {approval_id}")
        raise HTTPException(status_code=404, detail=f"Approval {approval_id} not found or already resolved") from e

    return ApprovalDecisionResponse(approval_id=approval_id, outcome=decision.outcome)


@router.get("/calendars/{user_id}", response_model=list[CalendarMappingResponse], tags=["Calendars"])
async def list_calendars(
    user_id: str,
    selector: Annotated[CalendarSelector, Depends(get_calendar_selector)],
) -> list[CalendarMappingResponse]:
    """List the user's configured calendars."""
    mappings = await selector.get_user_calendars(user_id)
    return [
        CalendarMappingResponse(
            google_calendar_id=mapping.google_calendar_id,
            calendar_name=mapping.calendar_name,
            entity_type=mapping.entity_type,
            is_default=mapping.is_default,
            time_zone=mapping.time_zone,
        )
        for mapping in mappings
    ]


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
