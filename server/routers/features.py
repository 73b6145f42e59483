"""
Features Router
===============

API endpoints for the feature backlog: listing with scheduling state,
creation, edits (including dependency changes with cycle rejection and the
human-only ``completed`` status) and the dependency graph.
"""

import logging
from typing import Iterable

from fastapi import APIRouter, Response, status

from automode.dependency_resolver import (
    build_graph_data,
    find_dependency_cycles,
    get_blocking_dependencies,
    would_create_circular_dependency,
)
from automode.errors import FeatureNotFoundError
from automode.models import FeatureItem

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..schemas import (
    DependencyGraphResponse,
    FeatureCreate,
    FeatureListResponse,
    FeatureResponse,
    FeatureUpdate,
)
from ..services.auto_mode_manager import (
    get_feature_store,
    get_project_dir,
    get_running_ids,
    is_feature_running,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_name}/features", tags=["features"])


# ============================================================================
# Helper Functions
# ============================================================================


def _to_response(
    data: dict,
    all_items: list[FeatureItem],
    running_ids: set[str],
) -> FeatureResponse:
    item = FeatureItem.from_dict(data)
    return FeatureResponse(
        **data,
        blocking_dependencies=get_blocking_dependencies(item, all_items),
        is_running=item.id in running_ids,
    )


def _validate_dependencies(
    feature_id: str,
    dependencies: list[str],
    all_items: list[FeatureItem],
    current: Iterable[str] = (),
) -> None:
    """
    Reject self references, edges that would close a cycle and unknown ids
    being newly added.

    Ids already in ``current`` whose feature has since been deleted are kept:
    the scheduler ignores dependencies on features that no longer exist.

    Raises:
        ValidationError: If a newly added dependency does not exist
        ConflictError: If a dependency would create a cycle
    """
    known_ids = {f.id for f in all_items}
    current_ids = set(current)
    for dep_id in dependencies:
        if dep_id == feature_id:
            raise ConflictError("dependencies", dep_id, "A feature cannot depend on itself")
        if dep_id not in known_ids:
            if dep_id in current_ids:
                continue
            raise ValidationError(f"Unknown dependency: {dep_id}", field="dependencies", value=dep_id)
        if would_create_circular_dependency(all_items, feature_id, dep_id):
            raise ConflictError(
                "dependencies",
                dep_id,
                f"Adding dependency {dep_id} to {feature_id} would create a cycle",
            )


# ============================================================================
# Endpoints
# ============================================================================


@router.get("", response_model=FeatureListResponse)
async def list_features(project_name: str) -> FeatureListResponse:
    """List features in natural order with their blocking dependencies."""
    project_dir = get_project_dir(project_name)
    store = get_feature_store()

    rows = store.list_features(project_dir)
    all_items = [FeatureItem.from_dict(row) for row in rows]
    running_ids = get_running_ids(project_name)

    features = [_to_response(row, all_items, running_ids) for row in rows]
    return FeatureListResponse(features=features, count=len(features))


@router.post("", response_model=FeatureResponse, status_code=status.HTTP_201_CREATED)
async def create_feature(project_name: str, request: FeatureCreate) -> FeatureResponse:
    """Add a feature to the end of the backlog."""
    project_dir = get_project_dir(project_name)
    store = get_feature_store()

    all_items = store.load_features(project_dir)
    if any(f.id == request.id for f in all_items):
        raise ConflictError("id", request.id, f"Feature {request.id} already exists")
    _validate_dependencies(request.id, request.dependencies, all_items)

    data = store.create_feature(
        project_dir,
        request.id,
        category=request.category,
        description=request.description,
        steps=request.steps,
        dependencies=request.dependencies,
        skip_tests=request.skip_tests,
        priority=request.priority,
    )
    logger.info("Created feature %s in project %s", request.id, project_name)

    all_items.append(FeatureItem.from_dict(data))
    return _to_response(data, all_items, get_running_ids(project_name))


@router.patch("/{feature_id}", response_model=FeatureResponse)
async def update_feature(
    project_name: str,
    feature_id: str,
    request: FeatureUpdate,
) -> FeatureResponse:
    """
    Update a feature.

    Setting ``status`` to ``completed`` is how a human marks a feature done
    by hand. Dependency changes that would create a cycle are rejected with
    409 CONFLICT.
    """
    project_dir = get_project_dir(project_name)
    store = get_feature_store()

    changes = request.model_dump(exclude_unset=True)
    all_items = store.load_features(project_dir)
    existing = next((f for f in all_items if f.id == feature_id), None)
    if existing is None:
        raise NotFoundError("feature", feature_id)

    if changes.get("dependencies") is not None:
        _validate_dependencies(
            feature_id, changes["dependencies"], all_items, current=existing.dependencies
        )

    # Explicit nulls mean "leave unchanged"
    changes = {k: v for k, v in changes.items() if v is not None}
    try:
        data = store.update_feature(feature_id, project_dir, **changes)
    except FeatureNotFoundError:
        raise NotFoundError("feature", feature_id)

    if "status" in changes:
        logger.info("Feature %s status set to %s by request", feature_id, changes["status"])

    all_items = store.load_features(project_dir)
    return _to_response(data, all_items, get_running_ids(project_name))


@router.delete("/{feature_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_feature(project_name: str, feature_id: str) -> Response:
    """Delete a feature. Returns 409 CONFLICT while the feature is running."""
    project_dir = get_project_dir(project_name)
    store = get_feature_store()

    if is_feature_running(project_name, feature_id):
        raise ConflictError(
            "id", feature_id, f"Feature {feature_id} is running; stop it before deleting"
        )

    try:
        store.delete_feature(feature_id, project_dir)
    except FeatureNotFoundError:
        raise NotFoundError("feature", feature_id)

    logger.info("Deleted feature %s from project %s", feature_id, project_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/graph", response_model=DependencyGraphResponse)
async def get_dependency_graph(project_name: str) -> DependencyGraphResponse:
    """Nodes and edges of the dependency graph, plus any cycles found."""
    project_dir = get_project_dir(project_name)
    all_items = get_feature_store().load_features(project_dir)

    graph = build_graph_data(all_items, get_running_ids(project_name))
    return DependencyGraphResponse(
        nodes=graph["nodes"],
        edges=graph["edges"],
        cycles=find_dependency_cycles(all_items),
    )
