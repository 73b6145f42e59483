"""
Backend Services
================

Per-project auto mode service management.
"""

from .auto_mode_manager import (
    cleanup_all_services,
    get_auto_mode_service,
    get_feature_store,
    get_project_dir,
    get_running_ids,
    is_feature_running,
    get_settings,
    validate_project_name,
)

__all__ = [
    "cleanup_all_services",
    "get_auto_mode_service",
    "get_feature_store",
    "get_project_dir",
    "get_running_ids",
    "is_feature_running",
    "get_settings",
    "validate_project_name",
]
