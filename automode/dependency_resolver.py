"""
Dependency Resolver
===================

Pure functions deciding whether a feature is blocked by its dependencies.

A dependency blocks its dependent unless the dependency feature exists in the
current feature set AND its status is in SATISFIED_STATUSES. Dependency ids
that do not resolve to a feature in the set (deleted features, features outside
the current view) are ignored rather than treated as blocking.

Every function here is side-effect free and is called against a freshly loaded
feature list on each admission tick. Cost is O(features x avg dependencies).

Cycle detection is provided for the feature API: a cycle never breaks
scheduling (the features involved simply never become ready), but it is
rejected when a user edits dependencies.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from typing import Any

from automode.models import SATISFIED_STATUSES, STATUS_BACKLOG, FeatureItem


def _index_by_id(features: Iterable[FeatureItem]) -> dict[str, FeatureItem]:
    return {f.id: f for f in features}


def get_blocking_dependencies(
    feature: FeatureItem,
    all_features: Iterable[FeatureItem],
) -> list[str]:
    """
    Return the dependency ids of ``feature`` that are not yet satisfied.

    Args:
        feature: The feature whose dependencies are checked
        all_features: The full feature set the dependencies resolve against

    Returns:
        Dependency ids, in declaration order, whose target exists in
        ``all_features`` with a status outside SATISFIED_STATUSES.
    """
    if not feature.dependencies:
        return []

    by_id = _index_by_id(all_features)
    blocking = []
    for dep_id in feature.dependencies:
        dep = by_id.get(dep_id)
        if dep is None:
            # Unknown target: dropped silently
            continue
        if dep.status not in SATISFIED_STATUSES:
            blocking.append(dep_id)
    return blocking


def are_dependencies_satisfied(
    feature: FeatureItem,
    all_features: Iterable[FeatureItem],
) -> bool:
    """True when no dependency of ``feature`` is blocking."""
    return not get_blocking_dependencies(feature, all_features)


def is_feature_ready(
    feature: FeatureItem,
    all_features: Iterable[FeatureItem],
) -> bool:
    """A feature is ready when it sits in backlog with nothing blocking it."""
    return feature.status == STATUS_BACKLOG and are_dependencies_satisfied(feature, all_features)


def get_ready_features(
    all_features: Sequence[FeatureItem],
    exclude_ids: Collection[str] = (),
) -> list[FeatureItem]:
    """
    Return ready features in store order.

    No reordering is applied: first eligible, first served. Features whose id
    is in ``exclude_ids`` (typically ids already held by the execution
    registry) are skipped.
    """
    by_id = _index_by_id(all_features)
    ready = []
    for feature in all_features:
        if feature.id in exclude_ids or feature.status != STATUS_BACKLOG:
            continue
        if _blocking_from_index(feature, by_id):
            continue
        ready.append(feature)
    return ready


def get_blocked_features(all_features: Sequence[FeatureItem]) -> list[dict[str, Any]]:
    """
    Return backlog features that are waiting on at least one dependency.

    Each entry is ``{"feature": FeatureItem, "blocked_by": [dep ids]}``.
    """
    by_id = _index_by_id(all_features)
    blocked = []
    for feature in all_features:
        if feature.status != STATUS_BACKLOG:
            continue
        blocking = _blocking_from_index(feature, by_id)
        if blocking:
            blocked.append({"feature": feature, "blocked_by": blocking})
    return blocked


def _blocking_from_index(feature: FeatureItem, by_id: dict[str, FeatureItem]) -> list[str]:
    # Same rule as get_blocking_dependencies, reusing a prebuilt index
    return [
        dep_id for dep_id in (feature.dependencies or [])
        if dep_id in by_id and by_id[dep_id].status not in SATISFIED_STATUSES
    ]


# =============================================================================
# Cycle Detection
# =============================================================================

def would_create_circular_dependency(
    all_features: Iterable[FeatureItem],
    feature_id: str,
    dependency_id: str,
) -> bool:
    """
    Check whether adding ``feature_id -> dependency_id`` would close a cycle.

    That happens when ``feature_id`` is already reachable from
    ``dependency_id`` by following dependency edges (or when both are the
    same feature).
    """
    if feature_id == dependency_id:
        return True

    by_id = _index_by_id(all_features)
    stack = [dependency_id]
    visited: set[str] = set()
    while stack:
        current = stack.pop()
        if current == feature_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        node = by_id.get(current)
        if node is not None:
            stack.extend(d for d in node.dependencies if d not in visited)
    return False


def find_dependency_cycles(all_features: Sequence[FeatureItem]) -> list[list[str]]:
    """
    Find dependency cycles among the known features.

    Returns one list of feature ids per cycle found, in dependency order.
    Edges to unknown ids are ignored, consistent with blocking resolution.
    """
    by_id = _index_by_id(all_features)
    # 0 = unvisited, 1 = on current path, 2 = done
    state: dict[str, int] = {fid: 0 for fid in by_id}
    cycles: list[list[str]] = []

    for root in by_id:
        if state[root] != 0:
            continue
        path: list[str] = []
        # Iterative DFS: (node, iterator over its known dependencies)
        stack = [(root, iter([d for d in by_id[root].dependencies if d in by_id]))]
        state[root] = 1
        path.append(root)
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if state[dep] == 0:
                    state[dep] = 1
                    path.append(dep)
                    stack.append((dep, iter([d for d in by_id[dep].dependencies if d in by_id])))
                    advanced = True
                    break
                if state[dep] == 1:
                    cycles.append(path[path.index(dep):])
            if not advanced:
                state[node] = 2
                path.pop()
                stack.pop()
    return cycles


# =============================================================================
# Graph Data
# =============================================================================

def build_graph_data(
    all_features: Sequence[FeatureItem],
    running_ids: Collection[str] = (),
) -> dict[str, list[dict[str, Any]]]:
    """
    Build nodes and edges describing the dependency graph.

    Nodes carry ``is_blocked``, ``is_running`` and ``blocking_dependencies``.
    Edges run from a dependency (source) to its dependent (target) and are only
    created when the dependency exists in the set.
    """
    by_id = _index_by_id(all_features)
    nodes = []
    edges = []

    for feature in all_features:
        is_running = feature.id in running_ids
        blocking = _blocking_from_index(feature, by_id)
        nodes.append({
            "id": feature.id,
            "status": feature.status,
            "category": feature.category,
            "description": feature.description,
            "is_blocked": bool(blocking),
            "is_running": is_running,
            "blocking_dependencies": blocking,
        })

        for dep_id in feature.dependencies:
            source = by_id.get(dep_id)
            if source is None:
                continue
            edges.append({
                "id": f"{dep_id}->{feature.id}",
                "source": dep_id,
                "target": feature.id,
                "animated": is_running or dep_id in running_ids,
                "source_status": source.status,
                "target_status": feature.status,
            })

    return {"nodes": nodes, "edges": edges}
