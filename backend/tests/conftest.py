"""
ScriptWatch Test Configuration.

Pytest fixtures and test doubles for the engine and the file watch.
Requires Python 3.11+.
"""

from collections import deque
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from loader.reconciler import Reconciler, inline_executor
from runtime.engine import ScriptContext
from watcher.debouncer import ChangeKind


class RecordingEngine:
    """Engine double that records every call and runs per-path behaviors."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Path, ScriptContext]] = []
        self.behaviors: dict[str, Callable[[ScriptContext], Any]] = {}
        self.failures: set[str] = set()

    def execute(self, path: Path, context: ScriptContext) -> None:
        self.calls.append(("execute", path, context))
        if path.as_posix() in self.failures:
            raise RuntimeError(f"boom in {path.as_posix()}")
        behavior = self.behaviors.get(path.as_posix())
        if behavior is not None:
            behavior(context)

    def release_context(self, path: Path, context: ScriptContext) -> None:
        self.calls.append(("release", path, context))

    def executed(self, path: str) -> list[ScriptContext]:
        return [c for kind, p, c in self.calls if kind == "execute" and p.as_posix() == path]

    def index_of(self, kind: str, context: ScriptContext | None) -> int:
        for i, (k, _, c) in enumerate(self.calls):
            if k == kind and c is context:
                return i
        raise AssertionError(f"no {kind} call for {context!r}")


class FakeWatch:
    """Watch backend double with scripted events and re-arm results."""

    def __init__(self) -> None:
        self.events: list[tuple[Path, ChangeKind]] = []
        self.rearm_results: deque[bool] = deque()
        self.recreate_error: OSError | None = None
        self.poll_error: OSError | None = None
        self.started = 0
        self.stopped = 0
        self.polls = 0
        self.rearms = 0
        self.recreates = 0

    def push(self, path: str, kind: ChangeKind) -> None:
        self.events.append((Path(path), kind))

    def start(self) -> bool:
        self.started += 1
        return True

    def poll(self) -> list[tuple[Path, ChangeKind]]:
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        events, self.events = self.events, []
        return events

    def rearm(self) -> bool:
        self.rearms += 1
        return self.rearm_results.popleft() if self.rearm_results else True

    def recreate(self) -> bool:
        self.recreates += 1
        if self.recreate_error is not None:
            raise self.recreate_error
        return True

    def stop(self) -> None:
        self.stopped += 1


def write_script(root: Path, name: str, content: str = "") -> Path:
    """Create or overwrite a file under the script root."""
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def script_root(tmp_path: Path) -> Path:
    """An empty script root directory."""
    root = tmp_path / "scripts"
    root.mkdir()
    return root


@pytest.fixture
def engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def fake_watch() -> FakeWatch:
    return FakeWatch()


@pytest.fixture
def reconciler(
    script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
) -> Generator[Reconciler, None, None]:
    """A reconciler that applies every cycle inline on the test thread."""
    instance = Reconciler(
        script_root,
        engine,
        watch=fake_watch,
        executor=inline_executor,
        poll_interval_ms=10,
    )
    yield instance
    instance.shutdown()
