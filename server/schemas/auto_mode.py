"""
Auto Mode Pydantic Schemas
==========================

Request/Response schemas for the auto mode and features API endpoints.

Mirrors the Feature model in automode/database.py and the status snapshot
returned by AutoModeService.status().
"""
from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Constants (must match automode/models.py)
# =============================================================================

FEATURE_STATUSES = Literal["backlog", "in_progress", "waiting_approval", "verified", "completed"]

FEATURE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")


# =============================================================================
# Auto Mode Control
# =============================================================================

class AutoModeStartRequest(BaseModel):
    """Request schema for starting the admission loop."""

    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        le=32,
        description="Maximum features running at once (defaults to AUTOMODE_MAX_CONCURRENCY)"
    )


class FollowUpRequest(BaseModel):
    """Request schema for continuing a feature with new instructions."""

    prompt: str = Field(..., min_length=1, max_length=20000, description="Additional instructions")


class AutoModeStatus(BaseModel):
    """Current state of a project's auto mode service."""

    running: bool = Field(..., description="Whether the admission loop is running")
    active_ids: list[str] = Field(default_factory=list, description="Ids of running features")
    count: int = Field(0, description="Number of running features")
    max_concurrency: int = Field(..., description="Concurrency ceiling")
    project_dir: str | None = Field(default=None, description="Project the loop is admitting for")


class AutoModeActionResponse(BaseModel):
    """Response for auto mode control actions."""

    success: bool
    message: str
    feature_id: str | None = None
    status: AutoModeStatus | None = None


# =============================================================================
# Features
# =============================================================================

class FeatureBase(BaseModel):
    category: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=5000)
    steps: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    skip_tests: bool = False
    priority: int = 0


class FeatureCreate(FeatureBase):
    """Request schema for creating a feature."""

    id: str = Field(..., description="Unique feature id")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not FEATURE_ID_PATTERN.match(v):
            raise ValueError("id may only contain letters, digits, '_', '-' and '.'")
        return v


class FeatureUpdate(BaseModel):
    """Request schema for partially updating a feature. Unset fields are left alone."""

    category: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=5000)
    steps: list[str] | None = None
    dependencies: list[str] | None = None
    skip_tests: bool | None = None
    priority: int | None = None
    status: FEATURE_STATUSES | None = None


class FeatureResponse(FeatureBase):
    """A feature with its scheduling state."""

    id: str
    status: FEATURE_STATUSES
    position: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    blocking_dependencies: list[str] = Field(default_factory=list)
    is_running: bool = False


class FeatureListResponse(BaseModel):
    features: list[FeatureResponse]
    count: int


class DependencyGraphNode(BaseModel):
    id: str
    status: FEATURE_STATUSES
    category: str = ""
    description: str = ""
    is_blocked: bool = False
    is_running: bool = False
    blocking_dependencies: list[str] = Field(default_factory=list)


class DependencyGraphEdge(BaseModel):
    id: str
    source: str
    target: str
    animated: bool = False
    source_status: str | None = None
    target_status: str | None = None


class DependencyGraphResponse(BaseModel):
    nodes: list[DependencyGraphNode]
    edges: list[DependencyGraphEdge]
    cycles: list[list[str]] = Field(default_factory=list)


class WSAutoModeMessage(BaseModel):
    """Lifecycle event as delivered over the project WebSocket."""

    type: str
    project: str
    feature_id: str | None = None
    timestamp: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
