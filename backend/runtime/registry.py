"""
ScriptWatch Script Registry.

The authoritative map from script path to live instance.
Requires Python 3.11+.
"""

from collections.abc import Iterator
from pathlib import Path

from runtime.script import Script
from utils.logger import LoggerMixin


class ScriptRegistry(LoggerMixin):
    """
    Holds at most one Script per path.

    The registry does no locking of its own; the reconciler that owns
    it serializes access.
    """

    def __init__(self) -> None:
        self._scripts: dict[Path, Script] = {}

    def register(self, script: Script) -> Script | None:
        """
        Register a script, replacing any instance already held for its path.

        Returns:
            The replaced instance, if there was one
        """
        previous = self._scripts.get(script.path)
        self._scripts[script.path] = script
        return previous

    def unregister(self, script: Script) -> bool:
        """
        Remove a script if it is still the registered instance for its path.

        An outdated instance whose path already points at a replacement
        leaves the replacement untouched.
        """
        if self._scripts.get(script.path) is script:
            del self._scripts[script.path]
            return True
        return False

    def get(self, path: Path) -> Script | None:
        """Get the script registered for a path."""
        return self._scripts.get(path)

    def snapshot(self) -> dict[Path, Script]:
        """Copy of the registry, safe to iterate while it changes."""
        return dict(self._scripts)

    def dependents_of(self, path: Path) -> list[Script]:
        """Scripts whose declared dependencies include a path."""
        return [
            script for script in self._scripts.values()
            if script.path != path and script.depends_on(path)
        ]

    def terminate_all(self) -> int:
        """
        Unregister and terminate every script.

        Returns:
            Number of scripts that did not terminate cleanly
        """
        scripts = list(self._scripts.values())
        self._scripts.clear()

        failures = 0
        for script in scripts:
            try:
                if not script.terminate():
                    failures += 1
            except Exception as e:
                failures += 1
                self.log.error("script_terminate_failed", path=script.path.as_posix(), exc_info=e)
        return failures

    def __contains__(self, path: object) -> bool:
        return path in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)

    def __iter__(self) -> Iterator[Script]:
        return iter(list(self._scripts.values()))
