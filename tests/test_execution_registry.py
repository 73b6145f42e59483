"""
Tests for the execution registry
================================

Reservation uniqueness, capacity, idempotent release and cooperative
cancellation.
"""

import asyncio
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.errors import AlreadyRunningError, CapacityExceededError, RunCancelledError
from automode.execution_registry import CancellationToken, ExecutionRegistry

PROJECT = Path("/tmp/project")


class TestReserve:

    def test_reserve_registers_handle(self):
        registry = ExecutionRegistry()
        handle = registry.reserve("A", PROJECT)

        assert handle.feature_id == "A"
        assert handle.project_dir == PROJECT
        assert handle.token.is_cancelled is False
        assert "A" in registry
        assert registry.count() == 1
        assert registry.get("A") is handle

    def test_duplicate_reserve_raises(self):
        registry = ExecutionRegistry()
        registry.reserve("A", PROJECT)

        with pytest.raises(AlreadyRunningError) as exc_info:
            registry.reserve("A", PROJECT)
        assert exc_info.value.feature_id == "A"
        assert registry.count() == 1

    def test_limit_is_enforced(self):
        registry = ExecutionRegistry()
        registry.reserve("A", PROJECT, limit=2)
        registry.reserve("B", PROJECT, limit=2)

        with pytest.raises(CapacityExceededError) as exc_info:
            registry.reserve("C", PROJECT, limit=2)
        assert exc_info.value.limit == 2
        assert exc_info.value.running == 2
        assert registry.running_ids() == {"A", "B"}

    def test_concurrent_reserve_admits_exactly_one(self):
        registry = ExecutionRegistry()
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                registry.reserve("A", PROJECT)
                results.append("ok")
            except AlreadyRunningError:
                results.append("dup")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("dup") == 7


class TestRelease:

    def test_release_is_idempotent(self):
        registry = ExecutionRegistry()
        handle = registry.reserve("A", PROJECT)

        assert registry.release("A", handle) is True
        assert registry.release("A", handle) is False
        assert registry.release("never", None) is False
        assert registry.count() == 0

    def test_stale_release_keeps_newer_handle(self):
        registry = ExecutionRegistry()
        old = registry.reserve("A", PROJECT)
        registry.cancel("A")
        new = registry.reserve("A", PROJECT)

        assert registry.release("A", old) is False
        assert registry.get("A") is new
        assert old.is_active() is False
        assert new.is_active() is True

    def test_reserve_after_release(self):
        registry = ExecutionRegistry()
        handle = registry.reserve("A", PROJECT)
        registry.release("A", handle)

        assert registry.reserve("A", PROJECT).feature_id == "A"


class TestCancel:

    def test_cancel_signals_and_frees_slot(self):
        registry = ExecutionRegistry()
        handle = registry.reserve("A", PROJECT)

        assert registry.cancel("A") is True
        assert handle.token.is_cancelled is True
        assert "A" not in registry
        assert handle.is_active() is False

    def test_cancel_unknown_returns_false(self):
        assert ExecutionRegistry().cancel("missing") is False

    def test_cancel_all(self):
        registry = ExecutionRegistry()
        a = registry.reserve("A", PROJECT)
        b = registry.reserve("B", PROJECT)

        cancelled = registry.cancel_all()

        assert sorted(cancelled) == ["A", "B"]
        assert a.token.is_cancelled and b.token.is_cancelled
        assert registry.count() == 0


class TestCancellationToken:

    def test_raise_if_cancelled(self):
        token = CancellationToken("A")
        token.raise_if_cancelled()
        token.cancel()
        token.cancel()
        with pytest.raises(RunCancelledError):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait_returns_true_when_cancelled(self):
        token = CancellationToken("A")
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        assert await token.wait(timeout=2.0, poll_interval=0.01) is True

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        token = CancellationToken("A")
        assert await token.wait(timeout=0.05, poll_interval=0.01) is False
