"""
Retry Controller
================

Drives one feature's executor until it reports success or a retry budget is
used up.

An agent session has a bounded length, so the executor can return without
an explicit pass while the work is clearly unfinished. When that happens and
the feature is still ``in_progress`` in the store, the controller appends a
retry marker to the feature's context log and resumes the executor with the
full accumulated context, up to ``max_attempts`` times.

The loop stops early when:
- the run's handle was cancelled or is no longer registered
- the store no longer reports ``in_progress`` (e.g. a human moved the
  feature back to backlog)
- the feature disappeared from the store

The attempt counter lives only for one ``execute()`` call. Executor
exceptions are not caught here; the caller classifies them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from automode.context_log import ContextLog
from automode.events import LifecycleNotifier
from automode.execution_registry import ExecutionHandle
from automode.executor import FeatureExecutor
from automode.feature_store import FeatureStore
from automode.models import STATUS_IN_PROGRESS, FeatureItem, RunResult

_logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def retry_marker(attempt: int) -> str:
    """Text appended to the context log before automatic retry ``attempt``."""
    return f"\n\n🔄 Auto-retry #{attempt} - Continuing implementation...\n\n"


class RetryController:
    """Bounded resume-until-done loop around a FeatureExecutor."""

    def __init__(
        self,
        executor: FeatureExecutor,
        store: FeatureStore,
        context_log: ContextLog,
        notifier: LifecycleNotifier,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.executor = executor
        self.store = store
        self.context_log = context_log
        self.notifier = notifier
        self.max_attempts = max_attempts

    async def execute(
        self,
        handle: ExecutionHandle,
        feature: FeatureItem,
        previous_context: Optional[str] = None,
    ) -> RunResult:
        """
        Run the feature and keep resuming it while it ends early.

        Args:
            handle: The run's execution handle (token + liveness)
            feature: The feature to execute
            previous_context: Context to resume from; None starts a fresh run

        Returns:
            The final RunResult. A non-passing result after the last attempt
            means the retry budget was exhausted.
        """
        project_dir = handle.project_dir

        if previous_context is None:
            result = await self.executor.run(feature, project_dir, self.notifier, handle.token)
        else:
            result = await self.executor.resume(
                feature, project_dir, self.notifier, previous_context, handle.token
            )

        attempts = 0
        while not result.passes:
            if handle.token.is_cancelled or not handle.is_active():
                _logger.info("Feature %s was stopped, not retrying", feature.id)
                break
            if attempts >= self.max_attempts:
                _logger.info(
                    "Feature %s did not pass after %d automatic retries",
                    feature.id, attempts,
                )
                break
            if not self._still_in_progress(feature.id, project_dir):
                break

            attempts += 1
            _logger.info(
                "Feature %s ended early, auto-retrying (attempt %d/%d)",
                feature.id, attempts, self.max_attempts,
            )
            self.context_log.append(project_dir, feature.id, retry_marker(attempts))
            self.notifier.progress(
                feature.id,
                f"\n🔄 Auto-retry #{attempts} - Agent ended early, continuing...\n",
            )
            retry_context = self.context_log.read(project_dir, feature.id)
            result = await self.executor.resume(
                feature, project_dir, self.notifier, retry_context, handle.token
            )

        return result

    def _still_in_progress(self, feature_id: str, project_dir: Path) -> bool:
        features = self.store.load_features(project_dir)
        current = next((f for f in features if f.id == feature_id), None)
        if current is None:
            _logger.warning("Feature %s disappeared during its run", feature_id)
            return False
        if current.status != STATUS_IN_PROGRESS:
            _logger.info(
                "Feature %s is now %s, not retrying", feature_id, current.status
            )
            return False
        return True
