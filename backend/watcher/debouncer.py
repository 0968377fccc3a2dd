"""
ScriptWatch Debouncer.

Coalesces rapid file system events until they settle.
Requires Python 3.11+.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from utils.logger import LoggerMixin


class ChangeKind(str, Enum):
    """Kinds of file system change reported to the reconciler."""

    CREATED = "created"
    DELETED = "deleted"
    MODIFIED = "modified"


@dataclass
class PendingChange:
    """A pending file change waiting to settle."""

    path: Path
    kind: ChangeKind
    timestamp: float


def _coalesce(previous: ChangeKind, current: ChangeKind) -> ChangeKind:
    """Fold two consecutive events on one path into a single kind."""
    if previous is ChangeKind.CREATED and current is ChangeKind.MODIFIED:
        return ChangeKind.CREATED
    if previous is ChangeKind.DELETED and current is ChangeKind.CREATED:
        # delete + create is how most editors save atomically
        return ChangeKind.MODIFIED
    return current


class Debouncer(LoggerMixin):
    """
    Debounces rapid file changes.

    Events are accumulated per path and only released by drain() once
    no new event has been seen for that path during the delay period.
    This keeps half-written files from being loaded during rapid saves.
    """

    def __init__(
        self,
        delay_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the debouncer.

        Args:
            delay_ms: Quiet period in milliseconds before a change is released
            clock: Monotonic time source, in seconds
        """
        self._delay = delay_ms / 1000.0
        self._clock = clock
        self._pending: dict[Path, PendingChange] = {}
        self._lock = threading.Lock()

    def debounce(self, path: Path, kind: ChangeKind) -> None:
        """
        Add a file change to the pending queue.

        Args:
            path: Path of the changed file, relative to the watched root
            kind: Type of change
        """
        now = self._clock()
        with self._lock:
            existing = self._pending.get(path)
            if existing is not None:
                kind = _coalesce(existing.kind, kind)
            self._pending[path] = PendingChange(path=path, kind=kind, timestamp=now)

    def drain(self) -> list[tuple[Path, ChangeKind]]:
        """
        Release every change that has been quiet for the delay period.

        Returns:
            List of (path, kind) tuples; changes still settling stay queued
        """
        now = self._clock()
        with self._lock:
            settled = [
                change for change in self._pending.values()
                if now - change.timestamp >= self._delay
            ]
            for change in settled:
                del self._pending[change.path]

        if settled:
            self.log.debug("releasing_debounced_changes", count=len(settled))
        return [(change.path, change.kind) for change in settled]

    def flush(self) -> list[tuple[Path, ChangeKind]]:
        """
        Immediately release all pending changes.

        Returns:
            List of (path, kind) tuples that were pending
        """
        with self._lock:
            changes = [(change.path, change.kind) for change in self._pending.values()]
            self._pending.clear()
        return changes

    def clear(self) -> None:
        """Clear all pending changes without releasing them."""
        with self._lock:
            self._pending.clear()

    @property
    def pending_count(self) -> int:
        """Get number of pending changes."""
        return len(self._pending)

    @property
    def pending_paths(self) -> list[Path]:
        """Get list of paths with pending changes."""
        return list(self._pending.keys())
