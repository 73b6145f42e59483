"""
Auto Mode Package
=================

Dependency-aware scheduler that runs backlog features through an AI coding
agent with bounded concurrency and automatic retries.
"""

from automode.auto_mode import AutoModeService
from automode.config import AutoModeSettings
from automode.context_log import ContextLog, FileContextLog
from automode.database import Feature, create_database, get_database_path
from automode.dependency_resolver import (
    are_dependencies_satisfied,
    build_graph_data,
    find_dependency_cycles,
    get_blocked_features,
    get_blocking_dependencies,
    get_ready_features,
    is_feature_ready,
    would_create_circular_dependency,
)
from automode.errors import (
    AlreadyRunningError,
    AutoModeError,
    CapacityExceededError,
    ExecutorFailure,
    FeatureNotFoundError,
    InvalidTransitionError,
    RunCancelledError,
)
from automode.events import LifecycleNotifier
from automode.execution_registry import CancellationToken, ExecutionHandle, ExecutionRegistry
from automode.executor import FeatureExecutor
from automode.feature_store import FeatureStore, SQLiteFeatureStore
from automode.models import FEATURE_STATUS, FeatureItem, RunResult
from automode.retry_controller import RetryController

__all__ = [
    "AutoModeService",
    "AutoModeSettings",
    "ContextLog",
    "FileContextLog",
    "Feature",
    "create_database",
    "get_database_path",
    "are_dependencies_satisfied",
    "build_graph_data",
    "find_dependency_cycles",
    "get_blocked_features",
    "get_blocking_dependencies",
    "get_ready_features",
    "is_feature_ready",
    "would_create_circular_dependency",
    "AlreadyRunningError",
    "AutoModeError",
    "CapacityExceededError",
    "ExecutorFailure",
    "FeatureNotFoundError",
    "InvalidTransitionError",
    "RunCancelledError",
    "LifecycleNotifier",
    "CancellationToken",
    "ExecutionHandle",
    "ExecutionRegistry",
    "FeatureExecutor",
    "FeatureStore",
    "SQLiteFeatureStore",
    "FEATURE_STATUS",
    "FeatureItem",
    "RunResult",
    "RetryController",
]
