"""
Feature Store
=============

The scheduler's single source of truth for feature status.

The scheduler only needs two operations, described by the FeatureStore
protocol:

- load_features(project_dir): every feature, in natural (position) order
- set_status(feature_id, status, project_dir): raises FeatureNotFoundError

SQLiteFeatureStore implements them on top of the per-project SQLAlchemy
database and adds the CRUD helpers used by the features API. Each call opens
a fresh session, so a status written by one call is visible to the next
(read-after-write), and nothing is cached across admission ticks.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from sqlalchemy import func

from automode.database import Feature, create_database
from automode.errors import FeatureNotFoundError
from automode.models import FEATURE_STATUS, STATUS_BACKLOG, FeatureItem

_logger = logging.getLogger(__name__)

# Columns the features API may update
UPDATABLE_FIELDS = frozenset({
    "category",
    "description",
    "steps",
    "status",
    "skip_tests",
    "dependencies",
    "priority",
})


@runtime_checkable
class FeatureStore(Protocol):
    """Persistence boundary consumed by the scheduler."""

    def load_features(self, project_dir: Path) -> list[FeatureItem]:
        ...

    def set_status(self, feature_id: str, status: str, project_dir: Path) -> None:
        ...


def _validate_status(status: str) -> None:
    if status not in FEATURE_STATUS:
        raise ValueError(
            f"Invalid status '{status}'. Must be one of: {', '.join(FEATURE_STATUS)}"
        )


class SQLiteFeatureStore:
    """
    FeatureStore backed by ``<project_dir>/features.db``.

    Engines are created lazily, once per project directory, and reused.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._engines: dict[Path, tuple[Any, Any]] = {}

    def _session_maker(self, project_dir: Path):
        key = Path(project_dir).resolve()
        with self._lock:
            entry = self._engines.get(key)
            if entry is None:
                entry = create_database(key)
                self._engines[key] = entry
                _logger.debug("Opened feature database for %s", key)
        return entry[1]

    def get_session(self, project_dir: Path):
        """Get a new database session for a project."""
        return self._session_maker(project_dir)()

    # -------------------------------------------------------------------------
    # Scheduler boundary
    # -------------------------------------------------------------------------

    def load_features(self, project_dir: Path) -> list[FeatureItem]:
        session = self.get_session(project_dir)
        try:
            rows = session.query(Feature).order_by(Feature.position, Feature.created_at).all()
            return [row.to_item() for row in rows]
        finally:
            session.close()

    def set_status(self, feature_id: str, status: str, project_dir: Path) -> None:
        _validate_status(status)
        session = self.get_session(project_dir)
        try:
            feature = session.get(Feature, feature_id)
            if feature is None:
                raise FeatureNotFoundError(feature_id)
            previous = feature.status
            feature.status = status
            session.commit()
            _logger.info("Feature %s: %s -> %s", feature_id, previous, status)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Feature API helpers
    # -------------------------------------------------------------------------

    def get_feature(self, feature_id: str, project_dir: Path) -> Optional[dict[str, Any]]:
        session = self.get_session(project_dir)
        try:
            feature = session.get(Feature, feature_id)
            return feature.to_dict() if feature is not None else None
        finally:
            session.close()

    def list_features(self, project_dir: Path) -> list[dict[str, Any]]:
        session = self.get_session(project_dir)
        try:
            rows = session.query(Feature).order_by(Feature.position, Feature.created_at).all()
            return [row.to_dict() for row in rows]
        finally:
            session.close()

    def create_feature(
        self,
        project_dir: Path,
        feature_id: str,
        *,
        category: str = "",
        description: str = "",
        steps: Optional[list[str]] = None,
        dependencies: Optional[list[str]] = None,
        skip_tests: bool = False,
        priority: int = 0,
        status: str = STATUS_BACKLOG,
    ) -> dict[str, Any]:
        """
        Insert a feature at the end of the natural order.

        Raises:
            ValueError: If the status is invalid or the id already exists
        """
        _validate_status(status)
        session = self.get_session(project_dir)
        try:
            if session.get(Feature, feature_id) is not None:
                raise ValueError(f"Feature {feature_id} already exists")
            max_position = session.query(func.max(Feature.position)).scalar()
            feature = Feature(
                id=feature_id,
                position=(max_position + 1) if max_position is not None else 0,
                category=category,
                description=description,
                steps=steps or [],
                dependencies=list(dependencies or []),
                skip_tests=skip_tests,
                priority=priority,
                status=status,
            )
            session.add(feature)
            session.commit()
            session.refresh(feature)
            return feature.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_feature(self, feature_id: str, project_dir: Path, **changes: Any) -> dict[str, Any]:
        """
        Apply ``changes`` to a feature.

        Raises:
            FeatureNotFoundError: If the feature does not exist
            ValueError: On unknown fields or invalid status
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "status" in changes:
            _validate_status(changes["status"])

        session = self.get_session(project_dir)
        try:
            feature = session.get(Feature, feature_id)
            if feature is None:
                raise FeatureNotFoundError(feature_id)
            for name, value in changes.items():
                if name == "dependencies":
                    value = list(value or [])
                setattr(feature, name, value)
            session.commit()
            session.refresh(feature)
            return feature.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_feature(self, feature_id: str, project_dir: Path) -> None:
        session = self.get_session(project_dir)
        try:
            feature = session.get(Feature, feature_id)
            if feature is None:
                raise FeatureNotFoundError(feature_id)
            session.delete(feature)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Dispose every cached engine."""
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine, _ in engines:
            engine.dispose()
