"""
ScriptWatch Reconciler.

Watches the script root, diffs what should be loaded against what is
loaded, expands changes through declared dependencies and applies the
result as ordered load/reload/unload transitions.
Requires Python 3.11+.
"""

import asyncio
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any

from loader.dependencies import expand_reloads
from loader.plan import ReconciliationPlan
from runtime.engine import ScriptEngine
from runtime.exports import ExportRegistry
from runtime.registry import ScriptRegistry
from runtime.script import ScopedWatcher, Script, resolve_script_path
from utils.config import get_settings
from utils.logger import LoggerMixin
from watcher.debouncer import ChangeKind
from watcher.file_watcher import FileWatch, WatchBackend

Executor = Callable[[Callable[[], None]], Any]


def inline_executor(task: Callable[[], None]) -> None:
    """Run script side effects immediately on the reconciling thread."""
    task()


def loop_executor(loop: asyncio.AbstractEventLoop) -> Executor:
    """Hand script side effects to an asyncio event loop's thread."""

    def submit(task: Callable[[], None]) -> None:
        loop.call_soon_threadsafe(task)

    return submit


class Reconciler(LoggerMixin):
    """
    Keeps the set of running scripts in line with the watched paths.

    Each cycle runs under one lock: compute the plan from the watched
    paths, the registry and the latest file events, then register and
    unregister instances. Running new instances and terminating old
    ones happens afterwards on the executor, all runs before any
    terminate, so a reloaded script is replaced without a gap.

    Paths are claimed with watch_all() and released with unwatch_all();
    a path stays watched while at least one claim is held. Scripts
    claim through their own scoped loader, the operator through
    watch()/unwatch().
    """

    def __init__(
        self,
        directory: Path,
        engine: ScriptEngine,
        *,
        watch: WatchBackend | None = None,
        executor: Executor | None = None,
        bindings: dict[str, Any] | None = None,
        exports: ExportRegistry | None = None,
        poll_interval_ms: int | None = None,
        preload_max_cycles: int | None = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            directory: Script root
            engine: Engine that evaluates script files
            watch: Directory watch; a FileWatch on the root by default
            executor: Where script run/terminate calls are handed off to;
                a dedicated single thread by default
            bindings: Host objects exposed to every script
            exports: Shared export registry; survives reloads of every script
            poll_interval_ms: Delay between cycles of the poll loop
            preload_max_cycles: Upper bound on preload() iterations
        """
        settings = get_settings()

        self.directory = directory
        self._engine = engine
        self._bindings = dict(bindings or {})
        self.exports = exports if exports is not None else ExportRegistry()
        self._poll_interval = (poll_interval_ms or settings.scripts.poll_interval_ms) / 1000.0
        self._preload_max_cycles = preload_max_cycles or settings.scripts.preload_max_cycles

        if watch is None and settings.watcher.enabled:
            watch = FileWatch(directory)
        self._watch = watch
        self._watch_started = False

        self._pool: ThreadPoolExecutor | None = None
        if executor is None:
            self._pool = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=settings.scripts.executor_thread_name,
            )
            executor = self._pool.submit
        self._executor = executor

        self._lock = threading.RLock()
        self._registry = ScriptRegistry()
        self._watched: Counter[Path] = Counter()
        self._operator = ScopedWatcher(self)

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Watched paths
    # ------------------------------------------------------------------

    def watch_all(self, paths: Iterable[str | Path]) -> None:
        """Add one claim on each path."""
        with self._lock:
            for value in paths:
                self._watched[resolve_script_path(value, self.directory)] += 1

    def unwatch_all(self, paths: Iterable[str | Path]) -> None:
        """Release one claim on each path."""
        with self._lock:
            for value in paths:
                path = resolve_script_path(value, self.directory)
                if self._watched[path] > 1:
                    self._watched[path] -= 1
                else:
                    del self._watched[path]

    def watch(self, paths: Iterable[str | Path]) -> None:
        """Operator control: watch paths. Watching a path twice is a no-op."""
        self._operator.watch_all(paths)

    def unwatch(self, paths: Iterable[str | Path]) -> None:
        """
        Operator control: stop watching paths.

        Releases the operator's own claim where watch() made one, and
        otherwise one claim of whichever script watched the path.
        """
        normalized = list(dict.fromkeys(resolve_script_path(p, self.directory) for p in paths))
        owned = set(self._operator.paths)
        self._operator.unwatch_all([p for p in normalized if p in owned])
        self.unwatch_all([p for p in normalized if p not in owned])

    def watched(self) -> list[Path]:
        """Distinct watched paths, in the order they were first claimed."""
        with self._lock:
            return list(self._watched)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def registry(self) -> ScriptRegistry:
        return self._registry

    def scripts(self) -> list[Script]:
        with self._lock:
            return list(self._registry)

    def get(self, path: str | Path) -> Script | None:
        with self._lock:
            return self._registry.get(resolve_script_path(path, self.directory))

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> ReconciliationPlan:
        """
        Run one reconciliation cycle.

        Plans and registers under the lock, then hands the run/terminate
        calls to the executor without waiting for them.

        Returns:
            The plan that was applied
        """
        with self._lock:
            if self._closed:
                return ReconciliationPlan()
            plan, to_run, to_terminate = self._plan_and_apply()

        if to_run or to_terminate:
            try:
                self._executor(partial(self._commit, to_run, to_terminate))
            except RuntimeError as e:
                # Replaced instances are out of the registry; nothing else would close them
                self.log.error("commit_dispatch_failed", error=str(e), unstarted=len(to_run))
                self._commit([], to_terminate)
        return plan

    def preload(self) -> int:
        """
        Reconcile until the watched set stops growing.

        Cycles are committed on the calling thread so that paths watched
        by newly run scripts are seen by the next cycle. Used at startup
        to settle chains of scripts loading scripts.

        Returns:
            Number of cycles run
        """
        cycles = 0
        while cycles < self._preload_max_cycles:
            with self._lock:
                if self._closed:
                    break
                before = len(self._watched)
                _, to_run, to_terminate = self._plan_and_apply()
            self._commit(to_run, to_terminate)
            cycles += 1

            with self._lock:
                if len(self._watched) == before:
                    break
        else:
            self.log.warning("preload_cycle_limit_reached", cycles=cycles)

        self.log.info("preload_complete", cycles=cycles, scripts=len(self._registry))
        return cycles

    def _plan_and_apply(self) -> tuple[ReconciliationPlan, list[Script], list[Script]]:
        """Compute this cycle's plan and update the registry. Caller holds the lock."""
        self._ensure_watch()

        plan = ReconciliationPlan()
        watched = set(self._watched)
        registered = self._registry.snapshot()

        # Watched paths: load what exists, unload what vanished
        for path in self._watched:
            exists = (self.directory / path).is_file()
            script = registered.get(path)
            if exists and script is None:
                plan.add_load(path)
            elif not exists and script is not None:
                plan.add_unload(script)

        # Loaded scripts nobody watches any more
        for path, script in registered.items():
            if path not in watched:
                plan.add_unload(script)

        # Raw file events
        try_unload: list[Path] = []
        for path, kind in self._poll_events():
            if plan.is_pending(path):
                continue
            if kind is ChangeKind.DELETED:
                if path not in try_unload:
                    try_unload.append(path)
                continue
            if path in registered or path not in watched:
                # unwatched files still invalidate whatever depends on them
                plan.add_reload(path)
            else:
                plan.add_load(path)

        self._rearm_watch()

        # A delete only unloads if nothing in this cycle loads the path again
        for path in try_unload:
            script = self._registry.get(path)
            if script is None or path in plan.to_load or path in plan.to_reload:
                continue
            plan.add_unload(script)

        expanded = expand_reloads(
            self._registry,
            [*plan.to_reload, *plan.to_load],
            exclude=plan.to_unload.keys(),
        )
        plan.reload_queue = [path for path in expanded if path not in plan.to_load]

        to_run: list[Script] = []
        to_terminate: list[Script] = []

        for path in plan.reload_queue:
            old = self._registry.get(path)
            if old is None:
                continue
            script = self._new_script(path)
            self._registry.register(script)
            to_run.append(script)
            to_terminate.append(old)
            plan.reloaded.append(path)
            self.log.info("script_reloaded", path=path.as_posix())

        for path in plan.to_load:
            if self._registry.get(path) is not None:
                continue
            script = self._new_script(path)
            self._registry.register(script)
            to_run.append(script)
            plan.loaded.append(path)
            self.log.info("script_loaded", path=path.as_posix())

        for path, script in plan.to_unload.items():
            self._registry.unregister(script)
            to_terminate.append(script)
            plan.unloaded.append(path)
            self.log.info("script_unloaded", path=path.as_posix())

        return plan, to_run, to_terminate

    def _new_script(self, path: Path) -> Script:
        return Script(
            path,
            directory=self.directory,
            engine=self._engine,
            watch_target=self,
            bindings=self._bindings,
            exports=self.exports,
            lock=self._lock,
        )

    def _commit(self, to_run: list[Script], to_terminate: list[Script]) -> None:
        """Run every new instance, then terminate every replaced or removed one."""
        for script in to_run:
            try:
                script.run()
            except Exception as e:
                self.log.error("script_run_failed", path=script.path.as_posix(), exc_info=e)

        for script in to_terminate:
            try:
                if not script.terminate():
                    self.log.warning("script_terminated_with_errors", path=script.path.as_posix())
            except Exception as e:
                self.log.error("script_terminate_failed", path=script.path.as_posix(), exc_info=e)

    # ------------------------------------------------------------------
    # File watch
    # ------------------------------------------------------------------

    def _ensure_watch(self) -> None:
        if self._watch is None or self._watch_started:
            return
        self._watch_started = True
        try:
            self._watch.start()
        except OSError as e:
            self.log.error("watch_start_failed", path=str(self.directory), error=str(e))

    def _poll_events(self) -> list[tuple[Path, ChangeKind]]:
        if self._watch is None:
            return []
        try:
            events = self._watch.poll()
        except OSError as e:
            self.log.error("watch_poll_failed", path=str(self.directory), error=str(e))
            return []
        return [
            (resolve_script_path(path, self.directory), ChangeKind(kind))
            for path, kind in events
        ]

    def _rearm_watch(self) -> None:
        """Re-arm the watch, recreating it once if it went stale."""
        if self._watch is None:
            return
        try:
            if self._watch.rearm():
                return
        except OSError as e:
            self.log.warning("watch_rearm_raised", error=str(e))

        self.log.error("watch_rearm_failed", path=str(self.directory))
        try:
            recreated = self._watch.recreate()
        except OSError as e:
            self.log.error("watch_recreate_failed", path=str(self.directory), error=str(e))
            return
        if not recreated:
            self.log.error("watch_recreate_failed", path=str(self.directory))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the poll loop on a background thread."""
        with self._lock:
            if self._closed:
                raise RuntimeError("reconciler has been shut down")
            if self._thread is not None:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._poll_loop,
                name="script-poll",
                daemon=True,
            )
            self._thread.start()

        self.log.info(
            "reconciler_started",
            path=str(self.directory),
            poll_interval_ms=int(self._poll_interval * 1000),
        )

    def _poll_loop(self) -> None:
        while not self._stop.wait(self._poll_interval):
            try:
                self.reconcile()
            except Exception:
                self.log.exception("reconcile_cycle_failed")

    def shutdown(self) -> None:
        """Stop polling and terminate every registered script."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(5.0, self._poll_interval * 2))

        if self._pool is not None:
            self._pool.shutdown(wait=True)

        with self._lock:
            if self._closed:
                return
            self._closed = True
            count = len(self._registry)
            failures = self._registry.terminate_all()
            self._watched.clear()

        if self._watch is not None:
            self._watch.stop()

        self.log.info("reconciler_shutdown", terminated=count, failures=failures)

    def __enter__(self) -> "Reconciler":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()
