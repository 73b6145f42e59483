"""
Auto Mode Service
=================

Autonomous feature implementation: picks ready features from the backlog and
runs them through the executor, up to ``max_concurrency`` at a time.

Components (each owned by one service instance):
- ExecutionRegistry: one handle per running feature, cancellation tokens
- RetryController: resumes executors that end before reporting success
- LifecycleNotifier: start/progress/complete/error events for the UI

Admission loop
--------------
``start_loop()`` spawns a task that checks immediately and then every
``check_interval`` seconds. Each check computes the free slots, reloads every
feature from the store, keeps the ready ones (backlog, dependencies
satisfied) in store order and admits as many as fit. Admission reserves the
slot and writes ``in_progress`` before the run task is created, with no
suspension point in between, so one feature is never dispatched twice.

Manual operations
-----------------
``run_feature``, ``resume_feature``, ``follow_up_feature``,
``verify_feature`` and ``commit_feature`` validate synchronously (reserve the
slot, load the feature, mark it) so callers get AlreadyRunningError or
FeatureNotFoundError immediately, then return the asyncio.Task carrying the
run.

``analyze_project`` takes a slot under a synthetic ``project-analysis-<ms>``
id, one at a time, and never touches the feature store.

Final status after a run:
- passes:                      verified (waiting_approval when skip_tests)
- fresh run did not pass:      backlog
- resume/follow-up not passed: stays in_progress, for a manual re-resume
- stopped or executor error:   unchanged

Usage:
    service = AutoModeService(store, executor, context_log, sink=broadcast)
    await service.start_loop(project_dir, max_concurrency=3)
    ...
    await service.stop_loop()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from automode.config import (
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRY_ATTEMPTS,
)
from automode.context_log import ContextLog
from automode.dependency_resolver import get_ready_features
from automode.errors import (
    AlreadyRunningError,
    CapacityExceededError,
    ExecutorFailure,
    FeatureNotFoundError,
    InvalidTransitionError,
    RunCancelledError,
)
from automode.events import EventSink, LifecycleNotifier
from automode.execution_registry import ExecutionHandle, ExecutionRegistry
from automode.executor import FeatureExecutor
from automode.feature_store import FeatureStore
from automode.models import (
    COMMITTABLE_STATUSES,
    STATUS_BACKLOG,
    STATUS_IN_PROGRESS,
    STATUS_VERIFIED,
    FeatureItem,
    RunResult,
    success_status,
)
from automode.retry_controller import RetryController

_logger = logging.getLogger(__name__)

FOLLOW_UP_HEADER = "\n\n## Follow-up Instructions\n\n"
ANALYSIS_ID_PREFIX = "project-analysis-"


class AutoModeService:
    """Scheduler for one project's feature backlog."""

    def __init__(
        self,
        store: FeatureStore,
        executor: FeatureExecutor,
        context_log: ContextLog,
        sink: Optional[EventSink] = None,
        *,
        registry: Optional[ExecutionRegistry] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        self.store = store
        self.executor = executor
        self.context_log = context_log
        self.notifier = LifecycleNotifier(sink)
        self.registry = registry if registry is not None else ExecutionRegistry()
        self.retry_controller = RetryController(
            executor, store, context_log, self.notifier, max_attempts=max_retry_attempts
        )
        self.check_interval = check_interval
        self.max_concurrency = max_concurrency

        self._loop_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._project_dir: Optional[Path] = None
        # Strong references to in-flight runs so they are not garbage collected
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Admission loop
    # =========================================================================

    async def start_loop(self, project_dir: Path, max_concurrency: Optional[int] = None) -> None:
        """
        Start the periodic admission loop for ``project_dir``.

        Raises:
            AlreadyRunningError: If the loop is already running
            ValueError: If max_concurrency is below 1
        """
        if self.is_loop_running:
            raise AlreadyRunningError()
        if max_concurrency is not None:
            if max_concurrency < 1:
                raise ValueError("max_concurrency must be at least 1")
            self.max_concurrency = max_concurrency

        self._loop_running = True
        self._project_dir = Path(project_dir)
        _logger.info(
            "Starting auto mode for project %s with max concurrency %d",
            self._project_dir, self.max_concurrency,
        )
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_periodic_loop(self._project_dir),
            name="automode-admission-loop",
        )

    async def stop_loop(self) -> list[str]:
        """
        Stop admitting work and signal every running feature to stop.

        Does not wait for executors to unwind.

        Returns:
            Ids of the features whose runs were signalled.
        """
        _logger.info("Stopping auto mode")
        self._loop_running = False

        task, self._loop_task = self._loop_task, None
        if task is not None and not task.done():
            task.cancel()

        cancelled = self.registry.cancel_all()
        for feature_id in cancelled:
            _logger.info("Aborting feature %s", feature_id)
        self._project_dir = None
        return cancelled

    async def _run_periodic_loop(self, project_dir: Path) -> None:
        _logger.info("Admission loop checking every %ss", self.check_interval)
        try:
            while self._loop_running:
                self.check_and_start_features(project_dir)
                await asyncio.sleep(self.check_interval)
        except asyncio.CancelledError:
            _logger.debug("Admission loop cancelled")
            raise

    def check_and_start_features(self, project_dir: Path) -> list[str]:
        """
        Run one admission tick.

        Returns:
            Ids of the features admitted by this tick, in admission order.
        """
        running = self.registry.count()
        available = self.max_concurrency - running
        _logger.debug("Checking features - running: %d/%d", running, self.max_concurrency)
        if available <= 0:
            _logger.debug("At max concurrency, waiting...")
            return []

        try:
            features = self.store.load_features(project_dir)
        except Exception as e:
            # Next tick retries; the loop keeps running
            _logger.error("Error loading features for %s: %s", project_dir, e)
            return []

        ready = get_ready_features(features, exclude_ids=self.registry.running_ids())
        if not ready:
            _logger.debug("No ready backlog features, waiting...")
            return []

        to_start = ready[:available]
        _logger.info("Starting %d feature(s) from backlog", len(to_start))

        started = []
        for feature in to_start:
            if self._admit(feature, project_dir):
                started.append(feature.id)
        return started

    def _admit(self, feature: FeatureItem, project_dir: Path) -> bool:
        try:
            handle = self.registry.reserve(feature.id, project_dir, limit=self.max_concurrency)
        except (AlreadyRunningError, CapacityExceededError) as e:
            _logger.debug("Skipping feature %s: %s", feature.id, e)
            return False

        try:
            self.store.set_status(feature.id, STATUS_IN_PROGRESS, project_dir)
        except Exception as e:
            self.registry.release(feature.id, handle)
            _logger.error("Could not mark feature %s in progress: %s", feature.id, e)
            self.notifier.error(feature.id, str(e))
            return False

        _logger.info("Starting feature %s: %s", feature.id, feature.description[:50])
        feature = dataclasses.replace(feature, status=STATUS_IN_PROGRESS)
        self._spawn(
            feature.id,
            self._guarded(handle, lambda: self._execute_feature(handle, feature, None)),
        )
        return True

    # =========================================================================
    # Manual operations
    # =========================================================================

    async def run_feature(self, project_dir: Path, feature_id: str) -> asyncio.Task:
        """Start a fresh run of one feature. A failed run returns it to backlog."""
        handle, feature = self._begin(project_dir, feature_id, mark_in_progress=True)
        _logger.info("Running specific feature %s", feature_id)
        return self._spawn(
            feature_id,
            self._guarded(handle, lambda: self._execute_feature(handle, feature, None)),
        )

    async def resume_feature(self, project_dir: Path, feature_id: str) -> asyncio.Task:
        """Resume a feature from its context log. A failed resume stays in_progress."""
        handle, feature = self._begin(project_dir, feature_id, mark_in_progress=True)
        try:
            previous_context = self.context_log.read(handle.project_dir, feature_id)
        except Exception:
            self.registry.release(feature_id, handle)
            raise
        _logger.info("Resuming feature %s", feature_id)
        return self._spawn(
            feature_id,
            self._guarded(handle, lambda: self._execute_feature(handle, feature, previous_context)),
        )

    async def follow_up_feature(self, project_dir: Path, feature_id: str, prompt: str) -> asyncio.Task:
        """Continue a feature with additional instructions appended to its context."""
        handle, feature = self._begin(project_dir, feature_id, mark_in_progress=True)
        instructions = f"{FOLLOW_UP_HEADER}{prompt}"
        try:
            previous_context = self.context_log.read(handle.project_dir, feature_id)
            self.context_log.append(handle.project_dir, feature_id, instructions)
        except Exception:
            self.registry.release(feature_id, handle)
            raise
        _logger.info("Follow-up on feature %s", feature_id)
        return self._spawn(
            feature_id,
            self._guarded(
                handle,
                lambda: self._execute_feature(handle, feature, previous_context + instructions),
            ),
        )

    async def verify_feature(self, project_dir: Path, feature_id: str) -> asyncio.Task:
        """Run the feature's tests: verified on pass, in_progress on failure."""
        handle, feature = self._begin(project_dir, feature_id, mark_in_progress=False)
        _logger.info("Verifying feature %s", feature_id)
        return self._spawn(feature_id, self._guarded(handle, lambda: self._verify(handle, feature)))

    async def commit_feature(self, project_dir: Path, feature_id: str) -> asyncio.Task:
        """
        Commit a feature's changes without further work and mark it verified.

        Raises:
            InvalidTransitionError: If the feature is not waiting_approval or verified
        """
        handle, feature = self._begin(project_dir, feature_id, mark_in_progress=False)
        if feature.status not in COMMITTABLE_STATUSES:
            self.registry.release(feature_id, handle)
            raise InvalidTransitionError(feature_id, feature.status, STATUS_VERIFIED)
        _logger.info("Committing feature %s", feature_id)
        return self._spawn(feature_id, self._guarded(handle, lambda: self._commit(handle, feature)))

    async def analyze_project(self, project_dir: Path) -> tuple[str, asyncio.Task]:
        """
        Survey the project's structure and tech stack in an execution slot.

        The run is tracked under a synthetic ``project-analysis-<ms>`` id so it
        shows in ``status()`` and can be stopped like a feature. Nothing is
        written to the feature store.

        Raises:
            AlreadyRunningError: If an analysis is already running
        """
        if any(i.startswith(ANALYSIS_ID_PREFIX) for i in self.registry.running_ids()):
            raise AlreadyRunningError(message="Project analysis is already running")

        analysis_id = f"{ANALYSIS_ID_PREFIX}{int(time.time() * 1000)}"
        limit = self.max_concurrency if self.is_loop_running else None
        handle = self.registry.reserve(analysis_id, project_dir, limit=limit)
        item = FeatureItem(
            id=analysis_id,
            category="Project Analysis",
            description="Analyzing project structure and tech stack",
        )
        _logger.info("Analyzing project %s", handle.project_dir)
        task = self._spawn(analysis_id, self._guarded(handle, lambda: self._analyze(handle, item)))
        return analysis_id, task

    async def stop_feature(self, feature_id: str) -> bool:
        """
        Signal one running feature to stop and free its slot.

        Returns:
            False if the feature was not running.
        """
        if not self.registry.cancel(feature_id):
            return False
        _logger.info("Stopping feature %s", feature_id)
        return True

    def status(self) -> dict[str, Any]:
        """Snapshot of the loop and the running features."""
        active_ids = sorted(self.registry.running_ids())
        return {
            "running": self.is_loop_running,
            "active_ids": active_ids,
            "count": len(active_ids),
            "max_concurrency": self.max_concurrency,
            "project_dir": str(self._project_dir) if self._project_dir else None,
        }

    @property
    def is_loop_running(self) -> bool:
        return self._loop_running

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every spawned run task has finished."""
        async def _drain() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, cancel every run and wait for the runs to unwind."""
        await self.stop_loop()
        try:
            await self.wait_idle(timeout=timeout)
        except asyncio.TimeoutError:
            _logger.warning("Timed out waiting for %d run(s) to finish", len(self._tasks))

    # =========================================================================
    # Run bodies
    # =========================================================================

    def _begin(
        self,
        project_dir: Path,
        feature_id: str,
        mark_in_progress: bool,
    ) -> tuple[ExecutionHandle, FeatureItem]:
        # Manual runs share the ceiling while the loop is admitting work
        limit = self.max_concurrency if self.is_loop_running else None
        handle = self.registry.reserve(feature_id, project_dir, limit=limit)
        try:
            feature = self._load_feature(handle.project_dir, feature_id)
            if mark_in_progress:
                self.store.set_status(feature_id, STATUS_IN_PROGRESS, handle.project_dir)
                feature = dataclasses.replace(feature, status=STATUS_IN_PROGRESS)
        except Exception:
            self.registry.release(feature_id, handle)
            raise
        return handle, feature

    def _load_feature(self, project_dir: Path, feature_id: str) -> FeatureItem:
        for feature in self.store.load_features(project_dir):
            if feature.id == feature_id:
                return feature
        raise FeatureNotFoundError(feature_id)

    async def _execute_feature(
        self,
        handle: ExecutionHandle,
        feature: FeatureItem,
        previous_context: Optional[str],
    ) -> RunResult:
        self.notifier.feature_started(feature)
        result = await self.retry_controller.execute(handle, feature, previous_context)
        handle.token.raise_if_cancelled()

        if result.passes:
            self.store.set_status(feature.id, success_status(feature.skip_tests), handle.project_dir)
        elif previous_context is None:
            self.store.set_status(feature.id, STATUS_BACKLOG, handle.project_dir)
        # A resume that did not pass keeps in_progress for manual re-resume

        self.notifier.feature_completed(feature.id, result.passes, result.message)
        return result

    async def _verify(self, handle: ExecutionHandle, feature: FeatureItem) -> RunResult:
        self.notifier.feature_started(feature)
        result = await self.executor.verify(feature, handle.project_dir, self.notifier, handle.token)
        handle.token.raise_if_cancelled()

        new_status = STATUS_VERIFIED if result.passes else STATUS_IN_PROGRESS
        self.store.set_status(feature.id, new_status, handle.project_dir)
        self.notifier.feature_completed(feature.id, result.passes, result.message)
        return result

    async def _commit(self, handle: ExecutionHandle, feature: FeatureItem) -> RunResult:
        self.notifier.feature_started(dataclasses.replace(feature, description="Committing changes..."))
        self.notifier.phase(feature.id, "action", "Committing changes to git...")
        result = await self.executor.commit(feature, handle.project_dir, self.notifier, handle.token)
        handle.token.raise_if_cancelled()

        if result.passes:
            self.store.set_status(feature.id, STATUS_VERIFIED, handle.project_dir)
        message = result.message or (
            "Changes committed successfully" if result.passes else "Commit failed"
        )
        self.notifier.feature_completed(feature.id, result.passes, message)
        return result

    async def _analyze(self, handle: ExecutionHandle, item: FeatureItem) -> RunResult:
        self.notifier.feature_started(item)
        result = await self.executor.analyze(item, handle.project_dir, self.notifier, handle.token)
        handle.token.raise_if_cancelled()

        message = result.message or (
            "Project analysis completed" if result.passes else "Project analysis failed"
        )
        self.notifier.feature_completed(item.id, result.passes, message)
        return result

    async def _guarded(
        self,
        handle: ExecutionHandle,
        work: Callable[[], Awaitable[RunResult]],
    ) -> Optional[RunResult]:
        """
        Run ``work`` with per-feature failure isolation.

        Nothing raised by one feature's run escapes to the loop or to other
        runs; the slot is released whatever happens.
        """
        feature_id = handle.feature_id
        try:
            return await work()
        except RunCancelledError as e:
            _logger.info("Feature %s stopped before finishing", feature_id)
            self.notifier.error(feature_id, str(e))
            return None
        except Exception as e:
            failure = ExecutorFailure.classify(feature_id, e)
            _logger.error("Error running feature %s: %s", feature_id, failure, exc_info=e)
            self.notifier.error(feature_id, str(e))
            return None
        finally:
            self.registry.release(feature_id, handle)

    def _spawn(self, feature_id: str, coro: Awaitable[Optional[RunResult]]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"automode-feature-{feature_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
