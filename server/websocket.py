"""
Project WebSocket
=================

Streams a project's auto mode events to the browser.

Server -> Client:
- auto mode lifecycle events (``auto_mode_feature_start``, ``auto_mode_progress``,
  ``auto_mode_feature_complete``, ``auto_mode_error``, ``auto_mode_phase``)
- {"type": "auto_mode_status", ...} once on connect
- {"type": "pong"} in reply to a ping

Client -> Server:
- {"type": "ping"} - Keep-alive ping
"""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from .event_broadcaster import get_event_broadcaster
from .services.auto_mode_manager import PROJECT_NAME_PATTERN, get_auto_mode_service

logger = logging.getLogger(__name__)


class ProjectCloseCode:
    """WebSocket close codes for the project endpoint."""

    INVALID_PROJECT_NAME = 4000


async def project_websocket(websocket: WebSocket, project_name: str) -> None:
    """Forward broadcaster messages to one client until it disconnects."""
    if not PROJECT_NAME_PATTERN.match(project_name):
        await websocket.close(
            code=ProjectCloseCode.INVALID_PROJECT_NAME, reason="Invalid project name"
        )
        return

    await websocket.accept()

    broadcaster = get_event_broadcaster(project_name)
    queue = broadcaster.subscribe()

    await websocket.send_json({
        "type": "auto_mode_status",
        **get_auto_mode_service(project_name).status(),
    })

    async def send_events_task() -> None:
        """Continuously send queued events to the WebSocket client."""
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("Error sending event to %s client: %s", project_name, e)

    sender = asyncio.create_task(send_events_task())

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            if message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json(
                    {"type": "error", "message": f"Unknown message type: {message.get('type')}"}
                )

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for %s", project_name)

    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        broadcaster.unsubscribe(queue)
