"""
ScriptWatch Script Instances.

One loaded script: its identity, declared dependencies, and the
resources it allocated while running.
Requires Python 3.11+.
"""

import os
import threading
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from runtime.engine import ScriptContext, ScriptEngine
from runtime.exports import ExportRegistry
from runtime.terminable import CompositeTerminable
from utils.logger import LoggerMixin, get_script_logger


class ScriptState(str, Enum):
    """Lifecycle states of a script instance."""

    CREATED = "created"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


def resolve_script_path(value: str | Path, directory: Path) -> Path:
    """
    Normalize a path to its canonical form under the script root.

    Relative paths are taken as relative to the root already. Absolute
    paths inside the root are made relative; absolute paths outside it
    are kept absolute.
    """
    path = Path(value)
    if path.is_absolute():
        try:
            path = path.relative_to(directory)
        except ValueError:
            try:
                path = path.resolve().relative_to(directory.resolve())
            except ValueError:
                return Path(os.path.normpath(path))
    return Path(os.path.normpath(path))


class WatchTarget(Protocol):
    """The side of the reconciler that scoped watchers claim paths from."""

    directory: Path

    def watch_all(self, paths: Iterable[str | Path]) -> None: ...

    def unwatch_all(self, paths: Iterable[str | Path]) -> None: ...


class ScopedWatcher:
    """
    Watches paths on behalf of one owner.

    Remembers which paths were claimed through it, ignores duplicate
    claims, and releases only its own claims. close() releases them all,
    so binding one to a script's lifetime unwatches whatever that
    script watched.
    """

    def __init__(self, parent: WatchTarget) -> None:
        self._parent = parent
        self._paths: list[Path] = []
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._parent.directory

    def _normalize(self, paths: Iterable[str | Path]) -> list[Path]:
        return [resolve_script_path(p, self._parent.directory) for p in paths]

    def watch(self, *paths: str | Path) -> None:
        self.watch_all(paths)

    def watch_all(self, paths: Iterable[str | Path]) -> None:
        with self._lock:
            added = []
            for path in self._normalize(paths):
                if path not in self._paths and path not in added:
                    added.append(path)
            self._paths.extend(added)
        if added:
            self._parent.watch_all(added)

    def unwatch(self, *paths: str | Path) -> None:
        self.unwatch_all(paths)

    def unwatch_all(self, paths: Iterable[str | Path]) -> None:
        with self._lock:
            removed = [p for p in dict.fromkeys(self._normalize(paths)) if p in self._paths]
            for path in removed:
                self._paths.remove(path)
        if removed:
            self._parent.unwatch_all(removed)

    @property
    def paths(self) -> list[Path]:
        with self._lock:
            return list(self._paths)

    def close(self) -> None:
        self.unwatch_all(self.paths)


class Script(LoggerMixin):
    """
    A single loaded script.

    A reload never mutates an instance: the reconciler builds a new
    Script for the same path, runs it, and only then terminates the old
    one. An instance is run at most once and terminated at most once.
    """

    def __init__(
        self,
        path: Path,
        *,
        directory: Path,
        engine: ScriptEngine,
        watch_target: WatchTarget,
        bindings: dict[str, Any] | None = None,
        exports: ExportRegistry | None = None,
        lock: Any = None,
    ) -> None:
        """
        Initialize the script instance.

        Args:
            path: Script path relative to the script root
            directory: The script root
            engine: Engine that evaluates the file
            watch_target: Where the script's own watch calls are claimed
            bindings: Host objects exposed to the script
            exports: Registry of values shared across scripts and reloads
            lock: Lock guarding the dependency set, shared with the reconciler
        """
        self.path = path
        self.name = path.stem
        self.directory = directory
        self.resources = CompositeTerminable()
        self.loader = ScopedWatcher(watch_target)
        self.state = ScriptState.CREATED
        self.error: BaseException | None = None

        self._engine = engine
        self._bindings = bindings or {}
        self._exports = exports if exports is not None else ExportRegistry()
        self._lock = lock or threading.RLock()
        self._context: ScriptContext | None = None
        self._dependencies: set[Path] = {path}
        self._last_dependency_change = self._modified_time(path) or 0.0

    def _modified_time(self, path: Path) -> float | None:
        try:
            return (self.directory / path).stat().st_mtime
        except OSError:
            return None

    @property
    def dependencies(self) -> frozenset[Path]:
        """Paths this script depends on, always including its own."""
        with self._lock:
            return frozenset(self._dependencies)

    @property
    def last_dependency_change(self) -> float:
        """Newest modification time seen among the declared dependencies."""
        with self._lock:
            return self._last_dependency_change

    @property
    def context(self) -> ScriptContext | None:
        return self._context

    def depends_on(self, path: Path) -> bool:
        with self._lock:
            return path in self._dependencies

    def depend(self, value: str | Path) -> None:
        """
        Declare that this script depends on another file.

        A change to that file reloads this script. Depending on the
        script's own path is a no-op.
        """
        path = resolve_script_path(value, self.directory)
        if path == self.path:
            return

        modified = self._modified_time(path)
        with self._lock:
            self._dependencies.add(path)
            if modified is not None and modified > self._last_dependency_change:
                self._last_dependency_change = modified

    def run(self) -> None:
        """
        Build the script's context and execute it.

        Errors raised by the script are logged and kept on the instance;
        they never propagate to the caller.
        """
        if self.state is not ScriptState.CREATED:
            self.log.warning("script_run_skipped", path=self.path.as_posix(), state=self.state.value)
            return

        self.state = ScriptState.RUNNING
        self._context = ScriptContext(
            name=self.name,
            path=self.path,
            directory=self.directory,
            loader=self.loader,
            resources=self.resources,
            depend=self.depend,
            logger=get_script_logger(self.name, self.path),
            exports=self._exports,
            bindings=dict(self._bindings),
        )

        try:
            self._engine.execute(self.path, self._context)
        except Exception as e:
            self.error = e
            self.log.error("script_run_failed", path=self.path.as_posix(), error=str(e), exc_info=e)

    def terminate(self) -> bool:
        """
        Release everything this script holds.

        Safe to call before run() or more than once. Failures of
        individual resources are logged and reported through the return
        value; they are never raised.

        Returns:
            True if every resource closed cleanly
        """
        if self.state in (ScriptState.TERMINATING, ScriptState.TERMINATED):
            return True

        self.state = ScriptState.TERMINATING
        clean = True

        try:
            self.loader.close()
        except Exception as e:
            clean = False
            self.log.error("script_unwatch_failed", path=self.path.as_posix(), exc_info=e)

        failure = self.resources.close_silently()
        if failure is not None:
            clean = False
            for error in failure.errors:
                self.log.error(
                    "script_resource_close_failed",
                    path=self.path.as_posix(),
                    error=repr(error),
                )

        if self._context is not None:
            try:
                self._engine.release_context(self.path, self._context)
            except Exception as e:
                clean = False
                self.log.error("script_release_failed", path=self.path.as_posix(), exc_info=e)

        self.state = ScriptState.TERMINATED
        return clean

    def describe(self) -> dict[str, Any]:
        """Summary used by the operator API."""
        return {
            "name": self.name,
            "path": self.path.as_posix(),
            "state": self.state.value,
            "dependencies": sorted(p.as_posix() for p in self.dependencies),
            "last_dependency_change": self.last_dependency_change,
            "error": str(self.error) if self.error is not None else None,
            "watching": [p.as_posix() for p in self.loader.paths],
        }

    def __repr__(self) -> str:
        return f"Script(path={self.path.as_posix()!r}, state={self.state.value})"
