"""
Feature Executor Interface
==========================

Boundary between the scheduler and whatever actually performs a feature's
work (an AI coding agent session).

Every call receives the feature, its project directory, the lifecycle
notifier to stream progress through, and the run's CancellationToken.
Executors must observe the token inside their own run loop and stop with
RunCancelledError once it is set; the scheduler never kills them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from automode.events import LifecycleNotifier
from automode.execution_registry import CancellationToken
from automode.models import FeatureItem, RunResult


class FeatureExecutor(ABC):
    """
    Abstract base class for feature executors.

    Implementations must provide:
    - run(): implement the feature from scratch
    - resume(): continue a feature given its accumulated context
    - verify(): run the feature's tests without changing the code
    - commit(): commit the feature's changes without doing further work
    - analyze(): survey the project itself, outside any backlog feature
    """

    @abstractmethod
    async def run(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
    ) -> RunResult:
        ...

    @abstractmethod
    async def resume(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        previous_context: str,
        token: CancellationToken,
    ) -> RunResult:
        ...

    @abstractmethod
    async def verify(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
    ) -> RunResult:
        ...

    @abstractmethod
    async def commit(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
    ) -> RunResult:
        ...

    @abstractmethod
    async def analyze(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
    ) -> RunResult:
        """Study the project's structure and tech stack. ``feature`` is a synthetic analysis item."""
        ...
