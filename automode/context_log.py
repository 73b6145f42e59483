"""
Context Log
===========

Append-only transcript kept per feature. The executor streams its output
into it and a resume hands the accumulated text back to the agent.

The scheduler only ever appends (retry markers, follow-up instructions) and
reads; it never truncates.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

_logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_DIR = Path(".automode") / "context"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@runtime_checkable
class ContextLog(Protocol):
    def read(self, project_dir: Path, feature_id: str) -> str:
        ...

    def append(self, project_dir: Path, feature_id: str, text: str) -> None:
        ...


class FileContextLog:
    """
    ContextLog stored as ``<project_dir>/.automode/context/<feature_id>.md``.
    """

    def __init__(self, context_dir: Path = DEFAULT_CONTEXT_DIR):
        self.context_dir = Path(context_dir)
        self._lock = threading.Lock()

    def path_for(self, project_dir: Path, feature_id: str) -> Path:
        """Return the context file path, with the id reduced to a safe filename."""
        safe_id = _UNSAFE_CHARS.sub("_", str(feature_id)).lstrip(".") or "_"
        return Path(project_dir) / self.context_dir / f"{safe_id}.md"

    def read(self, project_dir: Path, feature_id: str) -> str:
        path = self.path_for(project_dir, feature_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def append(self, project_dir: Path, feature_id: str, text: str) -> None:
        path = self.path_for(project_dir, feature_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)
        _logger.debug("Appended %d chars to context log of feature %s", len(text), feature_id)
