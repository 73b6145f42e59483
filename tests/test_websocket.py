"""
Tests for the Project WebSocket
===============================
"""

import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

sys.path.insert(0, str(Path(__file__).parent.parent))

from server.event_broadcaster import cleanup_event_broadcasters, get_event_broadcaster
from server.services.auto_mode_manager import reset_services
from server.websocket import ProjectCloseCode, project_websocket


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOMODE_PROJECTS_ROOT", str(tmp_path))
    reset_services()

    app = FastAPI()

    @app.websocket("/ws/projects/{project_name}")
    async def websocket_endpoint(websocket: WebSocket, project_name: str):
        await project_websocket(websocket, project_name)

    with patch("server.services.auto_mode_manager.create_executor", return_value=MagicMock()):
        with TestClient(app) as test_client:
            yield test_client

    cleanup_event_broadcasters()
    reset_services()


class TestProjectWebSocket:

    def test_initial_status_and_ping(self, client):
        with client.websocket_connect("/ws/projects/demo") as ws:
            status = ws.receive_json()
            assert status["type"] == "auto_mode_status"
            assert status["running"] is False
            assert status["active_ids"] == []

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_events_are_forwarded(self, client):
        with client.websocket_connect("/ws/projects/demo") as ws:
            ws.receive_json()
            broadcaster = get_event_broadcaster("demo")

            client.portal.call(
                broadcaster.publish,
                {"type": "auto_mode_feature_start", "feature_id": "A"},
            )

            message = ws.receive_json()
            assert message["type"] == "auto_mode_feature_start"
            assert message["project"] == "demo"

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws/projects/demo") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

    def test_unsubscribes_on_disconnect(self, client):
        with client.websocket_connect("/ws/projects/demo") as ws:
            ws.receive_json()
            assert get_event_broadcaster("demo").subscriber_count == 1

        deadline = time.monotonic() + 5
        while get_event_broadcaster("demo").subscriber_count and time.monotonic() < deadline:
            time.sleep(0.02)
        assert get_event_broadcaster("demo").subscriber_count == 0

    def test_invalid_project_name_closes(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/projects/bad.name") as ws:
                ws.receive_json()

        assert exc_info.value.code == ProjectCloseCode.INVALID_PROJECT_NAME
