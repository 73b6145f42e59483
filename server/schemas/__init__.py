"""
Pydantic Schemas Package
========================

Request/response schemas for the auto mode server.
"""

from .auto_mode import (
    AutoModeActionResponse,
    AutoModeStartRequest,
    AutoModeStatus,
    DependencyGraphEdge,
    DependencyGraphNode,
    DependencyGraphResponse,
    FeatureCreate,
    FeatureListResponse,
    FeatureResponse,
    FeatureUpdate,
    FollowUpRequest,
    WSAutoModeMessage,
)

__all__ = [
    "AutoModeActionResponse",
    "AutoModeStartRequest",
    "AutoModeStatus",
    "DependencyGraphEdge",
    "DependencyGraphNode",
    "DependencyGraphResponse",
    "FeatureCreate",
    "FeatureListResponse",
    "FeatureResponse",
    "FeatureUpdate",
    "FollowUpRequest",
    "WSAutoModeMessage",
]
