"""
Tests for the Features Router
=============================

CRUD over /api/projects/{project_name}/features, dependency validation
(unknown ids, self references and cycles) and the dependency graph.
"""

import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.models import RunResult
from server.event_broadcaster import cleanup_event_broadcasters
from server.exceptions import register_exception_handlers
from server.routers import auto_mode_router, features_router
from server.services.auto_mode_manager import cleanup_all_services, reset_services


class WaitingExecutor:

    async def run(self, feature, project_dir, notifier, token):
        await token.wait()
        token.raise_if_cancelled()
        return RunResult(passes=True)

    async def resume(self, feature, project_dir, notifier, previous_context, token):
        return await self.run(feature, project_dir, notifier, token)

    async def verify(self, feature, project_dir, notifier, token):
        return await self.run(feature, project_dir, notifier, token)

    async def commit(self, feature, project_dir, notifier, token):
        return await self.run(feature, project_dir, notifier, token)

    async def analyze(self, feature, project_dir, notifier, token):
        return await self.run(feature, project_dir, notifier, token)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOMODE_PROJECTS_ROOT", str(tmp_path))
    reset_services()
    (tmp_path / "demo").mkdir()

    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(features_router)
    app.include_router(auto_mode_router)

    with patch("server.services.auto_mode_manager.create_executor", return_value=WaitingExecutor()):
        with TestClient(app) as test_client:
            yield test_client
            test_client.portal.call(cleanup_all_services)

    cleanup_event_broadcasters()
    reset_services()


BASE = "/api/projects/demo/features"


def create(client, feature_id, **fields):
    response = client.post(BASE, json={"id": feature_id, **fields})
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# Create and List
# =============================================================================

class TestCreateAndList:

    def test_create_feature(self, client):
        data = create(
            client, "auth-1",
            category="auth",
            description="Users can log in",
            steps=["Render form"],
            skip_tests=True,
        )

        assert data["id"] == "auth-1"
        assert data["status"] == "backlog"
        assert data["skip_tests"] is True
        assert data["is_running"] is False
        assert data["blocking_dependencies"] == []

    def test_duplicate_id_conflicts(self, client):
        create(client, "A")

        response = client.post(BASE, json={"id": "A"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    def test_invalid_id_rejected(self, client):
        response = client.post(BASE, json={"id": "has spaces"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_unknown_dependency_rejected(self, client):
        response = client.post(BASE, json={"id": "B", "dependencies": ["nope"]})

        assert response.status_code == 422
        assert response.json()["details"]["field"] == "dependencies"

    def test_list_in_insertion_order_with_blockers(self, client):
        create(client, "A")
        create(client, "B", dependencies=["A"])

        data = client.get(BASE).json()

        assert data["count"] == 2
        assert [f["id"] for f in data["features"]] == ["A", "B"]
        assert data["features"][1]["blocking_dependencies"] == ["A"]

    def test_unknown_project(self, client):
        assert client.get("/api/projects/other/features").status_code == 404


# =============================================================================
# Update
# =============================================================================

class TestUpdate:

    def test_mark_completed_by_hand_unblocks_dependents(self, client):
        create(client, "A")
        create(client, "B", dependencies=["A"])

        response = client.patch(f"{BASE}/A", json={"status": "completed"})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        features = client.get(BASE).json()["features"]
        assert features[1]["blocking_dependencies"] == []

    def test_invalid_status_rejected(self, client):
        create(client, "A")

        response = client.patch(f"{BASE}/A", json={"status": "done"})

        assert response.status_code == 422

    def test_cycle_rejected(self, client):
        create(client, "A")
        create(client, "B", dependencies=["A"])

        response = client.patch(f"{BASE}/A", json={"dependencies": ["B"]})

        assert response.status_code == 409
        assert client.get(BASE).json()["features"][0]["dependencies"] == []

    def test_self_dependency_rejected(self, client):
        create(client, "A")

        response = client.patch(f"{BASE}/A", json={"dependencies": ["A"]})

        assert response.status_code == 409

    def test_dangling_dependency_survives_edit(self, client):
        create(client, "A")
        create(client, "C")
        create(client, "B", dependencies=["A"])
        assert client.delete(f"{BASE}/A").status_code == 204

        response = client.patch(f"{BASE}/B", json={"dependencies": ["A", "C"]})

        assert response.status_code == 200, response.text
        assert response.json()["dependencies"] == ["A", "C"]
        assert response.json()["blocking_dependencies"] == ["C"]

    def test_newly_added_unknown_dependency_rejected(self, client):
        create(client, "B")

        response = client.patch(f"{BASE}/B", json={"dependencies": ["ghost"]})

        assert response.status_code == 422
        assert response.json()["details"]["field"] == "dependencies"

    def test_update_unknown_feature(self, client):
        response = client.patch(f"{BASE}/missing", json={"priority": 3})

        assert response.status_code == 404


# =============================================================================
# Delete
# =============================================================================

class TestDelete:

    def test_delete_feature(self, client):
        create(client, "A")

        assert client.delete(f"{BASE}/A").status_code == 204
        assert client.get(BASE).json()["count"] == 0

    def test_delete_unknown_feature(self, client):
        assert client.delete(f"{BASE}/missing").status_code == 404

    def test_delete_running_feature_conflicts(self, client):
        create(client, "A")
        assert client.post("/api/projects/demo/auto-mode/features/A/run").status_code == 200

        response = client.delete(f"{BASE}/A")

        assert response.status_code == 409
        client.post("/api/projects/demo/auto-mode/features/A/stop")
        deadline = time.monotonic() + 5
        while client.get(BASE).json()["features"][0]["is_running"] and time.monotonic() < deadline:
            time.sleep(0.02)
        assert client.delete(f"{BASE}/A").status_code == 204


# =============================================================================
# Graph
# =============================================================================

class TestGraph:

    def test_graph_nodes_and_edges(self, client):
        create(client, "A")
        create(client, "B", dependencies=["A"])

        data = client.get(f"{BASE}/graph").json()

        assert {n["id"] for n in data["nodes"]} == {"A", "B"}
        assert [(e["source"], e["target"]) for e in data["edges"]] == [("A", "B")]
        blocked = {n["id"]: n["is_blocked"] for n in data["nodes"]}
        assert blocked == {"A": False, "B": True}
        assert data["cycles"] == []
