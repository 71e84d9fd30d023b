# mcfleet/routers/console_ws.py
"""
Live console, installation-progress and system telemetry WebSockets.

All three register the connection with the broadcast hub; only the console
socket accepts inbound frames.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from mcfleet.core.auth import websocket_user
from mcfleet.core.config import CONSOLE_BACKFILL_LINES
from mcfleet.services.broadcast import (
    EVENT_HISTORY,
    EVENT_STATUS,
    INSTALLATION_CHANNEL,
    SYSTEM_CHANNEL,
    get_broadcast_hub,
)
from mcfleet.services.command_policy import audit_event, decide_console_command
from mcfleet.services.console import ConsoleMessage, get_console_history
from mcfleet.services.supervisor import get_supervisor

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authorize(websocket: WebSocket):
    user_info = websocket_user(websocket)
    if user_info is None:
        await websocket.close(code=4003, reason="Forbidden")
    return user_info


async def handle_console_frame(websocket: WebSocket, instance_id: int, user_info: dict, raw: str) -> None:
    """Dispatch one inbound {type, data} frame from a console viewer."""
    hub = get_broadcast_hub()
    try:
        frame = json.loads(raw)
    except ValueError:
        logger.warning("[ConsoleWS] Ignoring non-JSON frame for instance %s", instance_id)
        return
    if not isinstance(frame, dict):
        return

    frame_type = frame.get("type")
    if frame_type == "command":
        command = frame.get("data") or frame.get("message") or ""
        decision = decide_console_command(command=str(command))
        if not decision.base_command:
            return
        if not decision.allowed:
            audit_event(actor=user_info.get("email", ""), action="console_command", target=decision.base_command,
                        result="blocked", extra={"reason": decision.reason, "instance_id": instance_id})
            await hub.send_to(websocket, "console", ConsoleMessage.error(
                f"Command '{decision.base_command}' is blocked. Use dedicated endpoints."
            ))
            return

        logger.info("[ConsoleWS] Executing command for instance %s: %s", instance_id, decision.command)
        audit_event(actor=user_info.get("email", ""), action="console_command", target=decision.base_command,
                    result="allowed", extra={"instance_id": instance_id})
        await hub.publish_console(instance_id, ConsoleMessage.command(f"> {decision.command}"))
        response = await get_supervisor().execute_command(instance_id, decision.command)
        if response is None:
            await hub.publish_console(instance_id, ConsoleMessage.error(
                f"Failed to execute command: {decision.command}"
            ))
        elif response.strip():
            await hub.publish_console(instance_id, ConsoleMessage.server_output(response.strip()))
    elif frame_type == "request_status":
        status = await get_supervisor().get_server_status_async(instance_id)
        await hub.send_to(websocket, EVENT_STATUS, status)
    elif frame_type == "request_history":
        history = get_console_history().recent(instance_id, CONSOLE_BACKFILL_LINES)
        await hub.send_to(websocket, EVENT_HISTORY, history)
    else:
        logger.warning("[ConsoleWS] Unknown message type for instance %s: %s", instance_id, frame_type)


@router.websocket("/ws/console/{instance_id}")
async def console_socket(websocket: WebSocket, instance_id: int):
    user_info = await _authorize(websocket)
    if user_info is None:
        return

    await websocket.accept()
    hub = get_broadcast_hub()
    await hub.subscribe(instance_id, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await handle_console_frame(websocket, instance_id, user_info, raw)
            except Exception:
                logger.error("[ConsoleWS] Error handling frame for instance %s", instance_id, exc_info=True)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(instance_id, websocket)


async def _listen_only(websocket: WebSocket, channel_id: int) -> None:
    hub = get_broadcast_hub()
    await hub.subscribe(channel_id, websocket)
    try:
        while True:
            # Inbound frames are ignored; reading keeps disconnects visible
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(channel_id, websocket)


@router.websocket("/ws/install/{instance_key}")
async def install_socket(websocket: WebSocket, instance_key: str):
    if await _authorize(websocket) is None:
        return
    await websocket.accept()
    logger.info("[ConsoleWS] Installation viewer connected for %s", instance_key)
    await _listen_only(websocket, INSTALLATION_CHANNEL)


@router.websocket("/ws/system")
async def system_socket(websocket: WebSocket):
    if await _authorize(websocket) is None:
        return
    await websocket.accept()
    await _listen_only(websocket, SYSTEM_CHANNEL)
