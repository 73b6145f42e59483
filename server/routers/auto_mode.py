"""
Auto Mode Router
================

API endpoints for auto mode control: the admission loop (start/stop/status)
and manual per-feature operations, plus a one-off project analysis.

Manual operations return as soon as the feature is reserved and marked;
the run itself continues in the background and reports through the project
WebSocket.
"""

import logging

from fastapi import APIRouter

from ..schemas import (
    AutoModeActionResponse,
    AutoModeStartRequest,
    AutoModeStatus,
    FollowUpRequest,
)
from ..services.auto_mode_manager import get_auto_mode_service, get_project_dir

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_name}/auto-mode", tags=["auto-mode"])


def _status(service) -> AutoModeStatus:
    return AutoModeStatus(**service.status())


# ============================================================================
# Admission Loop
# ============================================================================


@router.post("/start", response_model=AutoModeActionResponse)
async def start_auto_mode(
    project_name: str,
    request: AutoModeStartRequest = AutoModeStartRequest(),
) -> AutoModeActionResponse:
    """
    Start the admission loop for a project.

    Returns 409 ALREADY_RUNNING if the loop is already running.
    """
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.start_loop(project_dir, max_concurrency=request.max_concurrency)

    return AutoModeActionResponse(
        success=True,
        message=f"Auto mode started with max concurrency {service.max_concurrency}",
        status=_status(service),
    )


@router.post("/stop", response_model=AutoModeActionResponse)
async def stop_auto_mode(project_name: str) -> AutoModeActionResponse:
    """Stop the admission loop and signal every running feature to stop."""
    get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    cancelled = await service.stop_loop()

    return AutoModeActionResponse(
        success=True,
        message=f"Auto mode stopped, {len(cancelled)} feature(s) aborted",
        status=_status(service),
    )


@router.get("/status", response_model=AutoModeStatus)
async def get_auto_mode_status(project_name: str) -> AutoModeStatus:
    """Get whether the loop is running and which features are active."""
    get_project_dir(project_name)
    return _status(get_auto_mode_service(project_name))


@router.post("/analyze", response_model=AutoModeActionResponse)
async def analyze_project(project_name: str) -> AutoModeActionResponse:
    """
    Survey the project's structure and tech stack with the agent.

    Returns 409 ALREADY_RUNNING while another analysis is in progress.
    """
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    analysis_id, _ = await service.analyze_project(project_dir)

    return AutoModeActionResponse(
        success=True, message="Project analysis started", feature_id=analysis_id
    )


# ============================================================================
# Manual Feature Operations
# ============================================================================


@router.post("/features/{feature_id}/run", response_model=AutoModeActionResponse)
async def run_feature(project_name: str, feature_id: str) -> AutoModeActionResponse:
    """Start a fresh run of one feature, regardless of its dependencies."""
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.run_feature(project_dir, feature_id)

    return AutoModeActionResponse(
        success=True, message=f"Feature {feature_id} started", feature_id=feature_id
    )


@router.post("/features/{feature_id}/resume", response_model=AutoModeActionResponse)
async def resume_feature(project_name: str, feature_id: str) -> AutoModeActionResponse:
    """Resume a feature from its context log."""
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.resume_feature(project_dir, feature_id)

    return AutoModeActionResponse(
        success=True, message=f"Feature {feature_id} resumed", feature_id=feature_id
    )


@router.post("/features/{feature_id}/follow-up", response_model=AutoModeActionResponse)
async def follow_up_feature(
    project_name: str,
    feature_id: str,
    request: FollowUpRequest,
) -> AutoModeActionResponse:
    """Continue a feature with additional instructions."""
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.follow_up_feature(project_dir, feature_id, request.prompt)

    return AutoModeActionResponse(
        success=True, message=f"Follow-up started for feature {feature_id}", feature_id=feature_id
    )


@router.post("/features/{feature_id}/verify", response_model=AutoModeActionResponse)
async def verify_feature(project_name: str, feature_id: str) -> AutoModeActionResponse:
    """Run a feature's tests without changing its implementation."""
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.verify_feature(project_dir, feature_id)

    return AutoModeActionResponse(
        success=True, message=f"Verification started for feature {feature_id}", feature_id=feature_id
    )


@router.post("/features/{feature_id}/commit", response_model=AutoModeActionResponse)
async def commit_feature(project_name: str, feature_id: str) -> AutoModeActionResponse:
    """
    Commit a feature's changes and mark it verified.

    Returns 409 INVALID_TRANSITION unless the feature is waiting_approval
    or verified.
    """
    project_dir = get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    await service.commit_feature(project_dir, feature_id)

    return AutoModeActionResponse(
        success=True, message=f"Commit started for feature {feature_id}", feature_id=feature_id
    )


@router.post("/features/{feature_id}/stop", response_model=AutoModeActionResponse)
async def stop_feature(project_name: str, feature_id: str) -> AutoModeActionResponse:
    """Signal one running feature to stop. Its status is left unchanged."""
    get_project_dir(project_name)
    service = get_auto_mode_service(project_name)

    if not await service.stop_feature(feature_id):
        return AutoModeActionResponse(
            success=False, message=f"Feature {feature_id} is not running", feature_id=feature_id
        )

    return AutoModeActionResponse(
        success=True, message=f"Feature {feature_id} stopped", feature_id=feature_id
    )
