"""
Auto Mode Service Manager
=========================

Keeps one AutoModeService per project, created on first use and wired to
the shared SQLite feature store, the file context log, the configured
executor and the project's event broadcaster.

Project names are validated and resolved to directories under
AUTOMODE_PROJECTS_ROOT.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Optional

from automode.auto_mode import AutoModeService
from automode.config import AutoModeSettings
from automode.context_log import FileContextLog
from automode.feature_store import SQLiteFeatureStore
from automode.sdk_feature_executor import create_executor

from ..event_broadcaster import get_event_broadcaster
from ..exceptions import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)

PROJECT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,50}$")

# Seconds to wait for in-flight runs during shutdown
SHUTDOWN_TIMEOUT_SECONDS = 10.0

_services: dict[str, AutoModeService] = {}
_services_lock = threading.Lock()
_settings: Optional[AutoModeSettings] = None
_store: Optional[SQLiteFeatureStore] = None
_context_log: Optional[FileContextLog] = None


def get_settings() -> AutoModeSettings:
    """Settings read from the environment once per process."""
    global _settings
    if _settings is None:
        _settings = AutoModeSettings.from_env()
    return _settings


def get_feature_store() -> SQLiteFeatureStore:
    global _store
    if _store is None:
        _store = SQLiteFeatureStore()
    return _store


def get_context_log() -> FileContextLog:
    global _context_log
    if _context_log is None:
        _context_log = FileContextLog()
    return _context_log


def validate_project_name(name: str) -> str:
    """Validate project name to prevent path traversal."""
    if not PROJECT_NAME_PATTERN.match(name):
        raise BadRequestError("Invalid project name", details={"project": name})
    return name


def get_project_dir(project_name: str) -> Path:
    """
    Get the validated project directory for a project name.

    Raises:
        BadRequestError: If the name is invalid
        NotFoundError: If the project directory does not exist
    """
    project_name = validate_project_name(project_name)
    project_dir = (get_settings().projects_root / project_name).resolve()

    if not project_dir.is_dir():
        raise NotFoundError("project", project_name)

    return project_dir


def get_auto_mode_service(project_name: str) -> AutoModeService:
    """Get or create the AutoModeService for a project."""
    with _services_lock:
        service = _services.get(project_name)
        if service is None:
            settings = get_settings()
            context_log = get_context_log()
            broadcaster = get_event_broadcaster(project_name)
            service = AutoModeService(
                store=get_feature_store(),
                executor=create_executor(settings, context_log),
                context_log=context_log,
                sink=broadcaster.publish,
                check_interval=settings.check_interval_seconds,
                max_retry_attempts=settings.max_retry_attempts,
                max_concurrency=settings.max_concurrency,
            )
            _services[project_name] = service
            logger.info("Created auto mode service for project %s", project_name)
        return service


def get_running_ids(project_name: str) -> set[str]:
    """Ids of the features currently running for a project (empty if no service yet)."""
    with _services_lock:
        service = _services.get(project_name)
    if service is None:
        return set()
    return service.registry.running_ids()


def is_feature_running(project_name: str, feature_id: str) -> bool:
    """Whether ``feature_id`` currently holds an execution slot in the project."""
    with _services_lock:
        service = _services.get(project_name)
    return service is not None and feature_id in service.registry


async def cleanup_all_services() -> None:
    """Stop every service's loop and wait briefly for its runs to unwind."""
    with _services_lock:
        services = list(_services.items())
        _services.clear()

    for project_name, service in services:
        try:
            await service.shutdown(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except Exception as e:
            logger.warning("Error stopping auto mode for project %s: %s", project_name, e)

    if _store is not None:
        _store.dispose()


def reset_services() -> None:
    """Forget all services and cached singletons (for testing)."""
    global _settings, _store, _context_log
    with _services_lock:
        _services.clear()
    _settings = None
    _store = None
    _context_log = None
