"""
ScriptWatch Dependency Expansion.

Reverse-edge queries over the script registry and the transitive
closure used to invalidate dependents of a changed file.
Requires Python 3.11+.
"""

from collections import deque
from collections.abc import Collection, Iterable
from pathlib import Path

from runtime.registry import ScriptRegistry


def dependents_of(registry: ScriptRegistry, path: Path) -> list[Path]:
    """
    Get the paths of loaded scripts that declared a dependency on a path.

    Args:
        registry: Registry to query
        path: The depended-upon path

    Returns:
        Script paths, in registration order
    """
    return [script.path for script in registry.dependents_of(path)]


def expand_reloads(
    registry: ScriptRegistry,
    changed: Iterable[Path],
    exclude: Collection[Path] = (),
) -> list[Path]:
    """
    Expand changed paths into everything that must reload.

    Follows reverse dependency edges breadth-first until no new
    dependent is found. A path is expanded at most once, which is what
    terminates the walk on dependency cycles.

    Args:
        registry: Registry holding the dependency edges
        changed: Paths whose content changed
        exclude: Paths that must not be reloaded (being unloaded this cycle)

    Returns:
        Every changed path and transitive dependent, each exactly once
    """
    queue: dict[Path, None] = {}
    pending: deque[Path] = deque()

    for path in changed:
        if path not in queue and path not in exclude:
            queue[path] = None
            pending.append(path)

    while pending:
        current = pending.popleft()
        for dependent in dependents_of(registry, current):
            if dependent in queue or dependent in exclude:
                continue
            queue[dependent] = None
            pending.append(dependent)

    return list(queue)
