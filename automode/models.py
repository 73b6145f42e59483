"""
Auto Mode Domain Models
=======================

Plain data types shared by the scheduler, the store and the executor:

- FEATURE_STATUS: the lifecycle states a feature moves through
- FeatureItem: a feature as seen by the scheduler (loaded fresh every tick)
- RunResult: the single pass/fail signal an executor returns

Status lifecycle:

    backlog -> in_progress -> verified | waiting_approval
                    |
                    +-> backlog       (fresh run did not pass)
                    +-> in_progress   (resume / follow-up did not pass)

    waiting_approval | verified -> verified   (commit)

``completed`` is only ever set by a human through the feature API.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

# =============================================================================
# Status Constants
# =============================================================================

STATUS_BACKLOG = "backlog"
STATUS_IN_PROGRESS = "in_progress"
STATUS_WAITING_APPROVAL = "waiting_approval"
STATUS_VERIFIED = "verified"
STATUS_COMPLETED = "completed"

FEATURE_STATUS = (
    STATUS_BACKLOG,
    STATUS_IN_PROGRESS,
    STATUS_WAITING_APPROVAL,
    STATUS_VERIFIED,
    STATUS_COMPLETED,
)

# A dependency in one of these states no longer blocks its dependents.
# waiting_approval is deliberately absent: the work has not been signed off yet.
SATISFIED_STATUSES = frozenset({STATUS_COMPLETED, STATUS_VERIFIED})

# Statuses a commit may start from
COMMITTABLE_STATUSES = frozenset({STATUS_WAITING_APPROVAL, STATUS_VERIFIED})


def success_status(skip_tests: bool) -> str:
    """Status a feature moves to when its executor reports success."""
    return STATUS_WAITING_APPROVAL if skip_tests else STATUS_VERIFIED


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class FeatureItem:
    """
    A unit of work tracked through the auto mode lifecycle.

    Only ``id``, ``status``, ``dependencies`` and ``skip_tests`` influence
    scheduling. The remaining fields are payload forwarded to the executor.
    """
    id: str
    status: str = STATUS_BACKLOG
    dependencies: list[str] = field(default_factory=list)
    skip_tests: bool = False
    category: str = ""
    description: str = ""
    steps: list[str] = field(default_factory=list)
    priority: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureItem":
        """Build a FeatureItem from a dict, tolerating missing/NULL fields."""
        deps = data.get("dependencies") or []
        return cls(
            id=str(data["id"]),
            status=data.get("status") or STATUS_BACKLOG,
            dependencies=[str(d) for d in deps],
            skip_tests=bool(data.get("skip_tests", False)),
            category=data.get("category") or "",
            description=data.get("description") or "",
            steps=list(data.get("steps") or []),
            priority=int(data.get("priority") or 0),
        )


@dataclass(frozen=True)
class RunResult:
    """Outcome of one executor invocation."""
    passes: bool
    message: str = ""
