"""
ScriptWatch File Watcher.

Cross-platform directory monitoring using watchdog, exposed as a
poll/re-arm backend for the reconciliation loop.
Requires Python 3.11+.
"""

import fnmatch
import os
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from utils.config import get_settings
from utils.logger import LoggerMixin
from watcher.debouncer import ChangeKind, Debouncer


class WatchBackend(Protocol):
    """What the reconciler needs from a directory watch."""

    def start(self) -> bool: ...

    def poll(self) -> list[tuple[Path, ChangeKind]]: ...

    def rearm(self) -> bool: ...

    def recreate(self) -> bool: ...

    def stop(self) -> None: ...


class ScriptFileHandler(FileSystemEventHandler, LoggerMixin):
    """
    Handles file system events below the script root.

    Converts watchdog's absolute paths into root-relative paths and
    drops directories and ignored files before they reach the debouncer.
    """

    def __init__(
        self,
        root: Path,
        debouncer: Debouncer,
        ignore_patterns: list[str] | None = None,
    ) -> None:
        """
        Initialize the file handler.

        Args:
            root: Script root the observer is scheduled on
            debouncer: Debouncer to accumulate changes
            ignore_patterns: Glob patterns to ignore
        """
        super().__init__()
        self._root = root
        self._resolved_root = root.resolve()
        self._debouncer = debouncer
        self._ignore_patterns = ignore_patterns or []

    def _relative(self, raw_path: str | bytes) -> Path | None:
        """Map an event path onto the script root, or None if outside it."""
        path = Path(os.fsdecode(raw_path))
        try:
            return path.relative_to(self._root)
        except ValueError:
            pass
        try:
            return path.resolve().relative_to(self._resolved_root)
        except ValueError:
            return None

    def _should_ignore(self, path: Path) -> bool:
        """Check if a path should be ignored."""
        for pattern in self._ignore_patterns:
            if fnmatch.fnmatch(path.name, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in path.parts[:-1]):
                return True
        return False

    def _record(self, raw_path: str | bytes, kind: ChangeKind) -> None:
        path = self._relative(raw_path)
        if path is None or self._should_ignore(path):
            return
        self.log.debug("file_" + kind.value, path=path.as_posix())
        self._debouncer.debounce(path, kind)

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:
        """Handle file creation."""
        if isinstance(event, DirCreatedEvent):
            return
        self._record(event.src_path, ChangeKind.CREATED)

    def on_modified(self, event: FileModifiedEvent | DirModifiedEvent) -> None:
        """Handle file modification."""
        if isinstance(event, DirModifiedEvent):
            return
        self._record(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileDeletedEvent | DirDeletedEvent) -> None:
        """Handle file deletion."""
        if isinstance(event, DirDeletedEvent):
            return
        self._record(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileMovedEvent | DirMovedEvent) -> None:
        """Handle file move/rename as a delete of the source and a create of the target."""
        if isinstance(event, DirMovedEvent):
            return
        self._record(event.src_path, ChangeKind.DELETED)
        self._record(event.dest_path, ChangeKind.CREATED)


class FileWatch(LoggerMixin):
    """
    Watches the script root for changes.

    Events are buffered by a Debouncer and handed out in batches by
    poll(). After every poll the caller re-arms the watch; a watch that
    can no longer deliver events (observer died, root removed or
    remounted) reports False so the caller can recreate it.
    """

    def __init__(
        self,
        root: Path,
        debounce_delay_ms: int | None = None,
        ignore_patterns: list[str] | None = None,
        recursive: bool | None = None,
    ) -> None:
        """
        Initialize the file watch.

        Args:
            root: Root directory to watch
            debounce_delay_ms: Debounce delay in milliseconds
            ignore_patterns: Glob patterns to ignore
            recursive: Whether to watch subdirectories
        """
        settings = get_settings()

        self._root = root
        self._recursive = settings.watcher.recursive if recursive is None else recursive
        self._ignore_patterns = (
            settings.watcher.ignore_patterns if ignore_patterns is None else ignore_patterns
        )
        delay = (
            settings.watcher.debounce_delay_ms
            if debounce_delay_ms is None
            else debounce_delay_ms
        )

        self._debouncer = Debouncer(delay_ms=delay)
        self._handler = ScriptFileHandler(
            root=self._root,
            debouncer=self._debouncer,
            ignore_patterns=self._ignore_patterns,
        )
        self._observer: Any = None

    @property
    def handler(self) -> ScriptFileHandler:
        """The event handler feeding this watch."""
        return self._handler

    def start(self) -> bool:
        """
        Start watching the root directory.

        Returns:
            True if the watch is armed; OS errors are logged, not raised
        """
        if self._observer is not None:
            return True

        observer = Observer()
        try:
            observer.schedule(self._handler, str(self._root), recursive=self._recursive)
            observer.start()
        except OSError as e:
            self.log.error("file_watch_start_failed", path=str(self._root), error=str(e))
            self._stop_observer(observer)
            return False

        self._observer = observer
        self.log.info(
            "file_watch_started",
            path=str(self._root),
            recursive=self._recursive,
            ignore_patterns=self._ignore_patterns,
        )
        return True

    def poll(self) -> list[tuple[Path, ChangeKind]]:
        """Return the settled changes since the last poll."""
        return self._debouncer.drain()

    def rearm(self) -> bool:
        """
        Check that the watch can still deliver events.

        Returns:
            False if the watch must be recreated
        """
        observer = self._observer
        if observer is None or not observer.is_alive():
            return False
        if not self._root.is_dir():
            return False
        return any(emitter.is_alive() for emitter in observer.emitters)

    def recreate(self) -> bool:
        """Tear the watch down and start a fresh one."""
        self.stop()
        return self.start()

    def stop(self) -> None:
        """Stop watching for file changes."""
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        self._stop_observer(observer)
        self.log.info("file_watch_stopped", path=str(self._root))

    def _stop_observer(self, observer: Any) -> None:
        try:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5.0)
        except (OSError, RuntimeError) as e:
            self.log.warning("file_watch_stop_failed", error=str(e))

    @property
    def is_running(self) -> bool:
        """Check if the watch has a live observer."""
        return self._observer is not None

    @property
    def pending_count(self) -> int:
        """Get number of changes still settling."""
        return self._debouncer.pending_count

    def __enter__(self) -> "FileWatch":
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.stop()
