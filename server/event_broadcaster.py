"""
Auto Mode Event Broadcaster
===========================

Fans auto mode lifecycle events out to WebSocket subscribers.

Each subscriber gets a bounded asyncio.Queue that is fed with put_nowait():
publishing never waits, and a subscriber whose queue is full simply misses
the event. The scheduler's sink is therefore always non-blocking.

``auto_mode_progress`` events are throttled to max 10 events/second per
feature (sliding window). Lifecycle events (start, complete, error, phase)
are never throttled so the UI cannot miss a status change.
"""

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Any

from automode.events import EVENT_FEATURE_COMPLETE, EVENT_ERROR, EVENT_PROGRESS

logger = logging.getLogger(__name__)

# Throttle configuration: max 10 progress events per second per feature
MAX_EVENTS_PER_SECOND = 10
THROTTLE_WINDOW_SECONDS = 1.0

# Messages buffered per subscriber before new ones are dropped
SUBSCRIBER_QUEUE_SIZE = 1000


class EventThrottler:
    """
    Throttles events to max N events per second per feature.

    Uses a sliding window approach to track events per feature_id.

    Attributes:
        max_events_per_second: Maximum events allowed per second per feature
        window_seconds: Time window for throttling (default 1.0 second)
    """

    def __init__(
        self,
        max_events_per_second: int = MAX_EVENTS_PER_SECOND,
        window_seconds: float = THROTTLE_WINDOW_SECONDS
    ):
        self.max_events_per_second = max_events_per_second
        self.window_seconds = window_seconds
        # feature_id -> timestamps of events in current window
        self._event_timestamps: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def should_throttle(self, feature_id: str) -> bool:
        """
        Check if an event for this feature should be throttled.

        Returns:
            True if the event should be dropped, False if it should pass
        """
        with self._lock:
            now = time.monotonic()
            cutoff = now - self.window_seconds
            timestamps = [ts for ts in self._event_timestamps[feature_id] if ts > cutoff]
            self._event_timestamps[feature_id] = timestamps

            if len(timestamps) >= self.max_events_per_second:
                logger.debug(
                    "Throttling progress for feature %s: %d events in last %ss",
                    feature_id, len(timestamps), self.window_seconds
                )
                return True

            timestamps.append(now)
            return False

    def clear_feature(self, feature_id: str) -> None:
        """Clear throttle state for a finished feature."""
        with self._lock:
            self._event_timestamps.pop(feature_id, None)

    def reset(self) -> None:
        """Reset all throttle state."""
        with self._lock:
            self._event_timestamps.clear()


class AutoModeEventBroadcaster:
    """
    Per-project publisher for auto mode events.

    Usage:
        broadcaster = get_event_broadcaster(project_name)
        queue = broadcaster.subscribe()
        try:
            message = await queue.get()
        finally:
            broadcaster.unsubscribe(queue)

        # As the scheduler's event sink:
        AutoModeService(..., sink=broadcaster.publish)
    """

    def __init__(self, project_name: str, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.project_name = project_name
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self._throttler = EventThrottler()

    def subscribe(self) -> asyncio.Queue:
        """Register a new subscriber and return its queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        logger.debug("Subscriber added for project %s (%d total)", self.project_name, len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, message: dict[str, Any]) -> int:
        """
        Deliver ``message`` to every subscriber without waiting.

        Returns:
            Number of subscribers that received the message
        """
        event_type = message.get("type")
        feature_id = message.get("feature_id")

        if event_type == EVENT_PROGRESS and feature_id is not None:
            if self._throttler.should_throttle(str(feature_id)):
                return 0
        elif event_type in (EVENT_FEATURE_COMPLETE, EVENT_ERROR) and feature_id is not None:
            self._throttler.clear_feature(str(feature_id))

        message = {**message, "project": self.project_name}
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full for project %s, dropping %s event",
                    self.project_name, event_type
                )
        return delivered

    def reset(self) -> None:
        """Drop all subscribers and throttle state (for testing or shutdown)."""
        self._subscribers.clear()
        self._throttler.reset()


# Global broadcaster instances per project
_broadcasters: dict[str, AutoModeEventBroadcaster] = {}
_broadcasters_lock = threading.Lock()


def get_event_broadcaster(project_name: str) -> AutoModeEventBroadcaster:
    """Get or create the event broadcaster for a project."""
    with _broadcasters_lock:
        if project_name not in _broadcasters:
            _broadcasters[project_name] = AutoModeEventBroadcaster(project_name)
        return _broadcasters[project_name]


def cleanup_event_broadcasters() -> None:
    """Clean up all broadcaster instances."""
    with _broadcasters_lock:
        for broadcaster in _broadcasters.values():
            broadcaster.reset()
        _broadcasters.clear()
