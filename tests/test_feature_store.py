"""
Tests for SQLiteFeatureStore
============================

The per-project SQLite store behind the scheduler and the features API.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.database import Feature, create_database, get_database_path
from automode.errors import FeatureNotFoundError
from automode.feature_store import FeatureStore, SQLiteFeatureStore
from automode.models import FeatureItem


@pytest.fixture
def store():
    store = SQLiteFeatureStore()
    yield store
    store.dispose()


class TestDatabase:

    def test_database_file_created_in_project(self, tmp_path):
        engine, SessionLocal = create_database(tmp_path)
        try:
            assert get_database_path(tmp_path).exists()
            session = SessionLocal()
            assert session.query(Feature).count() == 0
            session.close()
        finally:
            engine.dispose()

    def test_store_satisfies_protocol(self, store):
        assert isinstance(store, FeatureStore)


class TestSchedulerBoundary:

    def test_load_features_in_insertion_order(self, store, tmp_path):
        for fid in ("C", "A", "B"):
            store.create_feature(tmp_path, fid, description=f"Feature {fid}")

        features = store.load_features(tmp_path)

        assert [f.id for f in features] == ["C", "A", "B"]
        assert all(isinstance(f, FeatureItem) for f in features)
        assert all(f.status == "backlog" for f in features)

    def test_set_status_is_visible_to_next_load(self, store, tmp_path):
        store.create_feature(tmp_path, "A")

        store.set_status("A", "in_progress", tmp_path)

        assert store.load_features(tmp_path)[0].status == "in_progress"

    def test_set_status_unknown_feature(self, store, tmp_path):
        with pytest.raises(FeatureNotFoundError):
            store.set_status("missing", "verified", tmp_path)

    def test_set_status_rejects_invalid_status(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        with pytest.raises(ValueError):
            store.set_status("A", "done", tmp_path)

    def test_payload_round_trips(self, store, tmp_path):
        store.create_feature(
            tmp_path,
            "A",
            category="auth",
            description="Login form",
            steps=["Render form", "Submit"],
            skip_tests=True,
            priority=5,
        )
        store.create_feature(tmp_path, "B", dependencies=["A"])

        a, b = store.load_features(tmp_path)

        assert a.category == "auth"
        assert a.steps == ["Render form", "Submit"]
        assert a.skip_tests is True
        assert a.priority == 5
        assert b.dependencies == ["A"]


class TestFeatureCrud:

    def test_duplicate_id_rejected(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        with pytest.raises(ValueError):
            store.create_feature(tmp_path, "A")

    def test_create_returns_dict_with_position(self, store, tmp_path):
        first = store.create_feature(tmp_path, "A")
        second = store.create_feature(tmp_path, "B")

        assert first["position"] == 0
        assert second["position"] == 1
        assert second["created_at"] is not None

    def test_update_feature(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        store.create_feature(tmp_path, "B")

        data = store.update_feature("B", tmp_path, dependencies=["A"], status="completed")

        assert data["dependencies"] == ["A"]
        assert data["status"] == "completed"
        assert store.get_feature("B", tmp_path)["status"] == "completed"

    def test_update_rejects_unknown_fields(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        with pytest.raises(ValueError):
            store.update_feature("A", tmp_path, position=9)

    def test_update_unknown_feature(self, store, tmp_path):
        with pytest.raises(FeatureNotFoundError):
            store.update_feature("missing", tmp_path, priority=1)

    def test_delete_feature(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        store.delete_feature("A", tmp_path)

        assert store.get_feature("A", tmp_path) is None
        with pytest.raises(FeatureNotFoundError):
            store.delete_feature("A", tmp_path)

    def test_list_features(self, store, tmp_path):
        store.create_feature(tmp_path, "A")
        store.create_feature(tmp_path, "B")

        assert [f["id"] for f in store.list_features(tmp_path)] == ["A", "B"]

    def test_projects_are_isolated(self, store, tmp_path):
        one = tmp_path / "one"
        two = tmp_path / "two"
        one.mkdir()
        two.mkdir()
        store.create_feature(one, "A")

        assert store.load_features(two) == []
