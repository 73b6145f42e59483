"""
Lifecycle Events
================

Side channel the scheduler publishes feature lifecycle events to.

Message types (dicts, JSON-serializable):
- auto_mode_feature_start:    {"feature_id", "feature"}
- auto_mode_progress:         {"feature_id", "content"}
- auto_mode_feature_complete: {"feature_id", "passes", "message"}
- auto_mode_error:            {"feature_id", "error"}
- auto_mode_phase:            {"feature_id", "phase", "message"}

Publishing is fire-and-forget: the sink gets no chance to apply backpressure,
and a sink that raises is logged and ignored so a broken consumer can never
stall admission or a running feature.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from automode.models import FeatureItem

_logger = logging.getLogger(__name__)

EVENT_FEATURE_START = "auto_mode_feature_start"
EVENT_PROGRESS = "auto_mode_progress"
EVENT_FEATURE_COMPLETE = "auto_mode_feature_complete"
EVENT_ERROR = "auto_mode_error"
EVENT_PHASE = "auto_mode_phase"

LIFECYCLE_EVENT_TYPES = frozenset({
    EVENT_FEATURE_START,
    EVENT_PROGRESS,
    EVENT_FEATURE_COMPLETE,
    EVENT_ERROR,
    EVENT_PHASE,
})

EventSink = Callable[[dict[str, Any]], Any]


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


class LifecycleNotifier:
    """
    Wraps an event sink with typed helpers and failure isolation.

    The sink may be sync or async. Async sinks are scheduled on the running
    loop and never awaited by the publisher.
    """

    def __init__(self, sink: Optional[EventSink] = None):
        self._sink = sink
        # Scheduled async sink calls, held until they finish
        self._pending: set[asyncio.Task] = set()

    def emit(self, message: dict[str, Any]) -> None:
        """Publish a raw message. Never raises."""
        if self._sink is None:
            return

        message.setdefault("timestamp", _utc_now().isoformat())
        try:
            result = self._sink(message)
            if asyncio.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    raise
                task = loop.create_task(result)
                self._pending.add(task)
                task.add_done_callback(self._sink_task_done)
        except Exception as e:
            _logger.warning(
                "Lifecycle sink failed for %s (feature %s): %s",
                message.get("type"), message.get("feature_id"), e,
            )

    def _sink_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("Async lifecycle sink failed: %s", exc)

    @property
    def pending_count(self) -> int:
        """Async sink calls scheduled but not yet finished."""
        return len(self._pending)

    def feature_started(self, feature: FeatureItem) -> None:
        self.emit({
            "type": EVENT_FEATURE_START,
            "feature_id": feature.id,
            "feature": feature.to_dict(),
        })

    def progress(self, feature_id: str, content: str) -> None:
        self.emit({
            "type": EVENT_PROGRESS,
            "feature_id": feature_id,
            "content": content,
        })

    def feature_completed(self, feature_id: str, passes: bool, message: str) -> None:
        self.emit({
            "type": EVENT_FEATURE_COMPLETE,
            "feature_id": feature_id,
            "passes": passes,
            "message": message,
        })

    def error(self, feature_id: str, error: str) -> None:
        self.emit({
            "type": EVENT_ERROR,
            "feature_id": feature_id,
            "error": error,
        })

    def phase(self, feature_id: str, phase: str, message: str) -> None:
        self.emit({
            "type": EVENT_PHASE,
            "feature_id": feature_id,
            "phase": phase,
            "message": message,
        })
