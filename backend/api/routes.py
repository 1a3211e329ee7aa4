"""HTTP API routes for the Roundtable backend.

This module defines the HTTP endpoints for incoming messages, conversation
control signals, conversation queries and health checks. Real-time events
are handled via WebSocket in websocket.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status

from errors import ConversationNotFoundError, InvalidTransitionError
from models import IncomingMessage
from models.schemas import (
    ControlResponse,
    ConversationDetailResponse,
    ConversationSummaryResponse,
    EditPlanningRequest,
    HealthResponse,
    ImageGenerationResponse,
    ImageRequest,
    IncomingMessageResponse,
    StopRequest,
)

if TYPE_CHECKING:
    from orchestrator import ConversationOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()

API_VERSION = "0.1.0"

ConversationId = Annotated[str, Path(description="The conversation ID")]

# Orchestrator dependency (set during application startup)
_orchestrator: ConversationOrchestrator | None = None


def set_orchestrator(orchestrator: ConversationOrchestrator) -> None:
    """Set the orchestrator instance for the routes.

    This should be called during application startup.
    """
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("orchestrator_configured")


def get_orchestrator() -> ConversationOrchestrator:
    """Get the orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator has not been configured.
    """
    if _orchestrator is None:
        logger.error("orchestrator_not_configured")
        raise RuntimeError(
            "Orchestrator not configured. Call set_orchestrator() during startup."
        )
    return _orchestrator


def _not_found(conversation_id: str) -> HTTPException:
    logger.warning("conversation_not_found", conversation_id=conversation_id)
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Conversation '{conversation_id}' not found",
    )


def _control_result(response: ControlResponse) -> ControlResponse:
    """Map a refused control signal to 409 Conflict."""
    if not response.accepted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=response.detail or "Control signal refused",
        )
    return response


# -----------------------------------------------------------------------------
# Incoming messages
# -----------------------------------------------------------------------------


@router.post(
    "/api/messages",
    response_model=IncomingMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an incoming message",
    description=(
        "Deliver a message from the chat transport. A message to an unseen "
        "channel starts a new conversation in planning."
    ),
)
async def post_message(request: IncomingMessage) -> IncomingMessageResponse:
    orchestrator = get_orchestrator()
    try:
        return await orchestrator.on_incoming_message(request)
    except InvalidTransitionError as e:
        logger.warning("incoming_message_conflict", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


# -----------------------------------------------------------------------------
# Control signals
# -----------------------------------------------------------------------------


@router.post(
    "/api/conversations/{conversation_id}/approve",
    response_model=ControlResponse,
    summary="Approve the plan and start",
)
async def approve_conversation(conversation_id: ConversationId) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.approve_and_start(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/resume",
    response_model=ControlResponse,
    summary="Resume a paused conversation",
    description="Refused with 409 while the cost ceiling is still reached.",
)
async def resume_conversation(conversation_id: ConversationId) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.resume(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/pause",
    response_model=ControlResponse,
    summary="Pause an active conversation",
)
async def pause_conversation(conversation_id: ConversationId) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.pause(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/stop",
    response_model=ControlResponse,
    summary="Stop a conversation or disable an agent",
    description='Target "all" stops the conversation; an agent id disables that agent.',
)
async def stop_conversation(
    conversation_id: ConversationId,
    request: StopRequest | None = None,
) -> ControlResponse:
    orchestrator = get_orchestrator()
    target = request.target if request is not None else "all"
    try:
        response = await orchestrator.stop(conversation_id, target)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/agents/{agent_id}/enable",
    response_model=ControlResponse,
    summary="Re-enable a disabled agent",
)
async def enable_agent(
    conversation_id: ConversationId,
    agent_id: Annotated[str, Path(description="The agent ID")],
) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.enable_agent(conversation_id, agent_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/refresh",
    response_model=ControlResponse,
    summary="Refresh documentation and compress history",
)
async def refresh_conversation(conversation_id: ConversationId) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.refresh_context(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.put(
    "/api/conversations/{conversation_id}/planning-message",
    response_model=ControlResponse,
    summary="Edit the opening message",
    description="Replace the initial message of a planning conversation and re-plan.",
)
async def edit_planning_message(
    conversation_id: ConversationId,
    request: EditPlanningRequest,
) -> ControlResponse:
    orchestrator = get_orchestrator()
    try:
        response = await orchestrator.edit_planning_message(conversation_id, request.text)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    return _control_result(response)


@router.post(
    "/api/conversations/{conversation_id}/images",
    response_model=ImageGenerationResponse,
    summary="Generate images",
    description=(
        "Draw one image per image agent from the prompt, or from the latest "
        "summary when no prompt is given. Refused with 409 once the image "
        "cost limit is reached."
    ),
)
async def generate_images(
    conversation_id: ConversationId,
    request: ImageRequest | None = None,
) -> ImageGenerationResponse:
    orchestrator = get_orchestrator()
    request = request or ImageRequest()
    try:
        response = await orchestrator.generate_images(
            conversation_id, request.prompt, request.agents
        )
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e
    if not response.accepted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=response.detail or "Image generation refused",
        )
    return response


# -----------------------------------------------------------------------------
# Queries
# -----------------------------------------------------------------------------


@router.get(
    "/api/conversations",
    response_model=list[ConversationSummaryResponse],
    summary="List conversations",
)
async def list_conversations() -> list[ConversationSummaryResponse]:
    return get_orchestrator().list_conversations()


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=ConversationDetailResponse,
    summary="Get conversation details",
    description="Status, counters, cost, moderation focus and current message history.",
)
async def get_conversation(conversation_id: ConversationId) -> ConversationDetailResponse:
    orchestrator = get_orchestrator()
    try:
        return orchestrator.get_detail(conversation_id)
    except ConversationNotFoundError as e:
        raise _not_found(conversation_id) from e


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Reports degraded while any agent circuit is open.",
)
async def health_check() -> HealthResponse:
    conversations = 0
    open_circuits: list[str] = []

    try:
        orchestrator = get_orchestrator()
        conversations = len(orchestrator.store.list_conversations())
        open_circuits = orchestrator.coordinator.resilience.breakers.open_targets()
    except RuntimeError:
        # Orchestrator not configured yet (e.g., during startup)
        pass

    return HealthResponse(
        status="degraded" if open_circuits else "healthy",
        version=API_VERSION,
        conversations=conversations,
        open_circuits=open_circuits,
    )
