"""
ScriptWatch Execution Engine.

The interface between script instances and whatever evaluates the
script files, plus a default engine that runs Python files.
Requires Python 3.11+.
"""

import runpy
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from runtime.exports import ExportRegistry
from runtime.terminable import CompositeTerminable
from utils.logger import LoggerMixin


class ScriptError(Exception):
    """Base class for script failures."""


class ScriptLoadError(ScriptError):
    """Raised when a script file cannot be read or compiled."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load script {path.as_posix()}: {reason}")


@dataclass(eq=False)
class ScriptContext:
    """
    Everything a running script can see of the host.

    Contexts compare by identity: every script instance gets its own,
    even when two instances share a path during a reload.
    """

    name: str
    path: Path
    directory: Path
    loader: Any
    resources: CompositeTerminable
    depend: Callable[[str | Path], None]
    logger: Any
    exports: ExportRegistry
    bindings: dict[str, Any] = field(default_factory=dict)

    @property
    def file(self) -> Path:
        """Location of the script file on disk."""
        return self.directory / self.path

    def as_globals(self) -> dict[str, Any]:
        """Names injected into the script's top-level namespace."""
        namespace = dict(self.bindings)
        namespace.update(
            {
                "name": self.name,
                "path": self.path.as_posix(),
                "directory": self.directory,
                "loader": self.loader,
                "resources": self.resources,
                "depend": self.depend,
                "logger": self.logger,
                "exports": self.exports,
            }
        )
        return namespace


class ScriptEngine(Protocol):
    """Evaluates script files on behalf of script instances."""

    def execute(self, path: Path, context: ScriptContext) -> Any: ...

    def release_context(self, path: Path, context: ScriptContext) -> None: ...


class PythonScriptEngine(LoggerMixin):
    """
    Runs scripts as Python files.

    Each execution gets a fresh module namespace seeded with the
    context's globals. The namespace is kept until the owning instance
    releases it so the host can inspect what a script defined.
    """

    def __init__(self) -> None:
        self._namespaces: dict[ScriptContext, dict[str, Any]] = {}
        self._latest: dict[Path, ScriptContext] = {}
        self._lock = threading.Lock()

    def execute(self, path: Path, context: ScriptContext) -> dict[str, Any]:
        """
        Evaluate a script file.

        Args:
            path: Script path relative to the script root
            context: The calling instance's context

        Returns:
            The script's resulting module namespace

        Raises:
            ScriptLoadError: if the file cannot be read or compiled
        """
        run_name = "scriptwatch." + context.name.replace(".", "_")
        try:
            namespace = runpy.run_path(
                str(context.file),
                init_globals=context.as_globals(),
                run_name=run_name,
            )
        except (OSError, SyntaxError) as e:
            raise ScriptLoadError(path, str(e)) from e

        with self._lock:
            self._namespaces[context] = namespace
            self._latest[path] = context
        return namespace

    def release_context(self, path: Path, context: ScriptContext) -> None:
        """Drop the namespace belonging to one instance."""
        with self._lock:
            self._namespaces.pop(context, None)
            if self._latest.get(path) is context:
                del self._latest[path]

    def namespace(self, path: Path) -> dict[str, Any] | None:
        """Namespace of the most recently executed instance for a path."""
        with self._lock:
            context = self._latest.get(path)
            return self._namespaces.get(context) if context is not None else None

    @property
    def context_count(self) -> int:
        return len(self._namespaces)
