"""
Database Models and Connection
==============================

SQLite database schema for feature storage using SQLAlchemy.

One database per project, stored as ``<project_dir>/features.db``.
"""
from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import JSON

from automode.models import FEATURE_STATUS, STATUS_BACKLOG, FeatureItem


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


Base = declarative_base()

_STATUS_CHECK = "status IN ({})".format(", ".join(f"'{s}'" for s in FEATURE_STATUS))


class Feature(Base):
    """Feature model representing one backlog item."""

    __tablename__ = "features"

    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="ck_feature_status"),
        # Admission reads every feature in natural (position) order
        Index("ix_feature_position", "position"),
    )

    id = Column(String(100), primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=0)
    category = Column(String(100), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    steps = Column(JSON, nullable=True, default=None)
    status = Column(String(20), nullable=False, default=STATUS_BACKLOG, index=True)
    skip_tests = Column(Boolean, nullable=False, default=False)
    # List of feature ids that must be verified/completed first.
    # NULL/empty = no dependencies
    dependencies = Column(JSON, nullable=True, default=None)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    def get_dependencies_safe(self) -> list[str]:
        """Safely extract dependencies, handling NULL and malformed data."""
        if not isinstance(self.dependencies, list):
            return []
        return [str(d) for d in self.dependencies if isinstance(d, (str, int))]

    def to_item(self) -> FeatureItem:
        """Convert the row to the scheduler's FeatureItem."""
        return FeatureItem(
            id=self.id,
            status=self.status or STATUS_BACKLOG,
            dependencies=self.get_dependencies_safe(),
            skip_tests=bool(self.skip_tests),
            category=self.category or "",
            description=self.description or "",
            steps=list(self.steps) if isinstance(self.steps, list) else [],
            priority=self.priority or 0,
        )

    def to_dict(self) -> dict:
        """Convert feature to dictionary for JSON serialization."""
        data = self.to_item().to_dict()
        data["position"] = self.position
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


def get_database_path(project_dir: Path) -> Path:
    """Return the path to the SQLite database for a project."""
    return project_dir / "features.db"


def get_database_url(project_dir: Path) -> str:
    """Return the SQLAlchemy database URL for a project.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    db_path = get_database_path(project_dir)
    return f"sqlite:///{db_path.as_posix()}"


# Filesystems where SQLite's WAL journal is unsafe
NETWORK_FILESYSTEMS = frozenset({"nfs", "nfs4", "cifs", "smbfs", "fuse.sshfs"})


def _uses_network_filesystem(project_dir: Path) -> bool:
    """True when ``project_dir`` lives on a UNC share or a network mount."""
    resolved = str(project_dir.resolve())
    if sys.platform == "win32":
        return resolved.startswith("\\\\")

    try:
        mounts = Path("/proc/mounts").read_text().splitlines()
    except OSError:
        return False

    for entry in mounts:
        fields = entry.split()
        if len(fields) >= 3 and fields[2] in NETWORK_FILESYSTEMS and resolved.startswith(fields[1]):
            return True
    return False


def create_database(project_dir: Path) -> tuple:
    """
    Create database and return engine + session maker.

    Args:
        project_dir: Directory containing the project

    Returns:
        Tuple of (engine, SessionLocal)
    """
    project_dir = Path(project_dir)
    project_dir.mkdir(parents=True, exist_ok=True)

    db_url = get_database_url(project_dir)
    engine = create_engine(db_url, connect_args={
        "check_same_thread": False,
        "timeout": 30  # Wait up to 30s for locks
    })
    Base.metadata.create_all(bind=engine)

    journal_mode = "DELETE" if _uses_network_filesystem(project_dir) else "WAL"
    with engine.connect() as conn:
        conn.execute(text(f"PRAGMA journal_mode={journal_mode}"))
        conn.execute(text("PRAGMA busy_timeout=30000"))
        conn.commit()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal
