"""
Execution Registry
==================

Tracks the features that currently hold an execution slot.

Invariants:
- At most one ExecutionHandle exists per feature id.
- ``reserve()`` is an atomic check-and-insert guarded by a lock, so the
  admission loop, manual API operations and executor threads can all call it.
- ``release()`` is idempotent and only ever removes the handle it was given,
  so cleanup from a stopped run cannot drop a newer handle for the same id.

Cancellation is cooperative: cancelling a handle sets its token and frees the
slot, it never waits for the executor to unwind.

Usage:
    registry = ExecutionRegistry()
    handle = registry.reserve("feature-1", project_dir)
    try:
        await executor.run(feature, project_dir, notifier, handle.token)
    finally:
        registry.release("feature-1", handle)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from automode.errors import AlreadyRunningError, CapacityExceededError, RunCancelledError

_logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal passed explicitly down the call chain.

    Backed by threading.Event so both async code and synchronous executor
    code running in worker threads can observe it.
    """

    def __init__(self, feature_id: Optional[str] = None):
        self.feature_id = feature_id
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal cancellation. Safe to call more than once."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelledError once cancellation has been signalled."""
        if self._event.is_set():
            raise RunCancelledError(self.feature_id)

    async def wait(self, timeout: Optional[float] = None, poll_interval: float = 0.1) -> bool:
        """
        Wait asynchronously until cancelled or ``timeout`` elapses.

        Returns:
            True if the token was cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._event.is_set():
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True


@dataclass
class ExecutionHandle:
    """Live record of one running feature execution."""
    feature_id: str
    project_dir: Path
    token: CancellationToken
    _is_active: Callable[["ExecutionHandle"], bool] = field(repr=False)

    def is_active(self) -> bool:
        """True while this exact handle is still registered for its feature."""
        return self._is_active(self)


class ExecutionRegistry:
    """
    Authoritative map of feature id -> ExecutionHandle.

    One registry is owned by each AutoModeService instance; nothing here is
    process-global, so independent schedulers can coexist (e.g. in tests).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, ExecutionHandle] = {}

    def reserve(
        self,
        feature_id: str,
        project_dir: Path,
        limit: Optional[int] = None,
    ) -> ExecutionHandle:
        """
        Atomically register a handle for ``feature_id``.

        Args:
            feature_id: Feature to reserve a slot for
            project_dir: Project the execution belongs to
            limit: Optional concurrency ceiling checked under the same lock

        Raises:
            AlreadyRunningError: If the feature already holds a handle
            CapacityExceededError: If ``limit`` slots are already taken
        """
        with self._lock:
            if feature_id in self._handles:
                raise AlreadyRunningError(feature_id)
            if limit is not None and len(self._handles) >= limit:
                raise CapacityExceededError(limit, len(self._handles))
            handle = ExecutionHandle(
                feature_id=feature_id,
                project_dir=Path(project_dir),
                token=CancellationToken(feature_id),
                _is_active=self._is_registered,
            )
            self._handles[feature_id] = handle
        _logger.debug("Reserved execution slot for feature %s", feature_id)
        return handle

    def release(self, feature_id: str, handle: Optional[ExecutionHandle] = None) -> bool:
        """
        Remove the handle for ``feature_id``. Idempotent.

        When ``handle`` is given, only that exact handle is removed.

        Returns:
            True if a handle was removed.
        """
        with self._lock:
            current = self._handles.get(feature_id)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._handles[feature_id]
        _logger.debug("Released execution slot for feature %s", feature_id)
        return True

    def cancel(self, feature_id: str) -> bool:
        """
        Signal the feature's cancellation token and free its slot.

        Returns:
            False if no handle exists for ``feature_id``.
        """
        with self._lock:
            handle = self._handles.pop(feature_id, None)
        if handle is None:
            return False
        handle.token.cancel()
        _logger.info("Cancelled execution of feature %s", feature_id)
        return True

    def cancel_all(self) -> list[str]:
        """Signal every outstanding handle, then clear the registry."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.token.cancel()
        if handles:
            _logger.info("Cancelled %d running feature(s)", len(handles))
        return [h.feature_id for h in handles]

    def get(self, feature_id: str) -> Optional[ExecutionHandle]:
        with self._lock:
            return self._handles.get(feature_id)

    def running_ids(self) -> set[str]:
        with self._lock:
            return set(self._handles)

    def count(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, feature_id: object) -> bool:
        with self._lock:
            return feature_id in self._handles

    def _is_registered(self, handle: ExecutionHandle) -> bool:
        return self.get(handle.feature_id) is handle
