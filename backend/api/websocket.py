"""WebSocket handler for real-time event streaming.

This module streams conversation events to clients and accepts a small set
of commands (ping, approve, resume, pause, stop).
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import ConversationNotFoundError
from events import ConversationEvent, EventBus, EventType

if TYPE_CHECKING:
    from orchestrator import ConversationOrchestrator

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_orchestrator: "ConversationOrchestrator | None" = None


def set_orchestrator(orchestrator: "ConversationOrchestrator") -> None:
    """Set the orchestrator used by WebSocket command handlers."""
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("websocket_orchestrator_configured")


def get_orchestrator() -> "ConversationOrchestrator":
    """Return the configured orchestrator."""
    if _orchestrator is None:
        raise RuntimeError(
            "Orchestrator not configured for WebSocket handlers. "
            "Call set_orchestrator() during startup."
        )
    return _orchestrator


@websocket_router.websocket("/ws/{conversation_id}")
async def websocket_endpoint(websocket: WebSocket, conversation_id: str) -> None:
    """Stream events for one conversation.

    - Server -> Client: conversation events, history first
    - Client -> Server: commands
    """
    await websocket.accept()
    logger.info("websocket_connected", conversation_id=conversation_id)

    event_bus: EventBus = get_orchestrator().store.event_bus

    # Subscribe before reading history so no event falls between the two
    queue = event_bus.subscribe(conversation_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(conversation_id)
        if history:
            logger.info(
                "replaying_event_history",
                conversation_id=conversation_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info(
                        "websocket_disconnect_during_replay",
                        conversation_id=conversation_id,
                    )
                    return

        async def send_events() -> None:
            """Forward bus events, skipping ones already replayed."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.CONVERSATION_CLOSED:
                        await websocket.send_json(event.model_dump(mode="json"))
                        logger.info("conversation_closed_sentinel", conversation_id=conversation_id)
                        break
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", conversation_id=conversation_id)
            except Exception as e:
                logger.error("websocket_send_error", conversation_id=conversation_id, error=str(e))

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", conversation_id=conversation_id)
                        continue
                    await handle_command(websocket, event_bus, conversation_id, data)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", conversation_id=conversation_id)
            except Exception as e:
                logger.error(
                    "websocket_receive_error", conversation_id=conversation_id, error=str(e)
                )

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", conversation_id=conversation_id)
    finally:
        event_bus.unsubscribe(conversation_id, queue)
        logger.info("websocket_cleanup_complete", conversation_id=conversation_id)


async def handle_command(
    websocket: WebSocket,
    event_bus: EventBus,
    conversation_id: str,
    data: dict[str, Any],
) -> None:
    """Run one client command. Failures are reported as agent_error events."""
    command_type = data.get("type")
    logger.info("command_received", conversation_id=conversation_id, command_type=command_type)

    if command_type == "ping":
        await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
        return

    orchestrator = get_orchestrator()
    commands = {
        "approve": lambda: orchestrator.approve_and_start(conversation_id),
        "resume": lambda: orchestrator.resume(conversation_id),
        "pause": lambda: orchestrator.pause(conversation_id),
        "stop": lambda: orchestrator.stop(conversation_id, str(data.get("target", "all"))),
    }
    command = commands.get(str(command_type))
    if command is None:
        logger.warning("unknown_command", conversation_id=conversation_id, command_type=command_type)
        return

    try:
        response = await command()
    except ConversationNotFoundError as e:
        await event_bus.publish(
            ConversationEvent(
                type=EventType.AGENT_ERROR,
                conversation_id=conversation_id,
                data={"error": str(e), "phase": str(command_type)},
            )
        )
        return
    await websocket.send_json({"type": "command_result", **response.model_dump(mode="json")})
