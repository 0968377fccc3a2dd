"""
ScriptWatch Reconciliation Plan.

The work computed by one reconciliation cycle.
Requires Python 3.11+.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from runtime.script import Script


@dataclass
class ReconciliationPlan:
    """
    Paths to load, reload and unload in one cycle.

    to_load and to_reload never share a path; when a path qualifies for
    both, loading wins. reload_queue is to_reload plus every transitive
    dependent, filled in once the plan is expanded.
    """

    to_load: list[Path] = field(default_factory=list)
    to_unload: dict[Path, Script] = field(default_factory=dict)
    to_reload: list[Path] = field(default_factory=list)
    reload_queue: list[Path] = field(default_factory=list)

    # What apply actually did
    loaded: list[Path] = field(default_factory=list)
    reloaded: list[Path] = field(default_factory=list)
    unloaded: list[Path] = field(default_factory=list)

    def add_load(self, path: Path) -> None:
        if path not in self.to_load:
            self.to_load.append(path)
        if path in self.to_reload:
            self.to_reload.remove(path)

    def add_reload(self, path: Path) -> None:
        if path not in self.to_load and path not in self.to_reload:
            self.to_reload.append(path)

    def add_unload(self, script: Script) -> None:
        self.to_unload.setdefault(script.path, script)

    def is_pending(self, path: Path) -> bool:
        """Whether a path is already slated for loading or unloading."""
        return path in self.to_load or path in self.to_unload

    @property
    def is_empty(self) -> bool:
        """True if the cycle had nothing to do."""
        return not (self.to_load or self.to_unload or self.to_reload or self.reload_queue)

    @property
    def changed(self) -> bool:
        """True if apply created or removed any instance."""
        return bool(self.loaded or self.reloaded or self.unloaded)

    def summary(self) -> dict[str, Any]:
        return {
            "to_load": [p.as_posix() for p in self.to_load],
            "to_unload": [p.as_posix() for p in self.to_unload],
            "to_reload": [p.as_posix() for p in self.to_reload],
            "reload_queue": [p.as_posix() for p in self.reload_queue],
            "loaded": [p.as_posix() for p in self.loaded],
            "reloaded": [p.as_posix() for p in self.reloaded],
            "unloaded": [p.as_posix() for p in self.unloaded],
        }
