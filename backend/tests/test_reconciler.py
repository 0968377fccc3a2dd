"""
Tests for the Reconciler and dependency expansion.

Requires Python 3.11+.
"""

import asyncio
import threading
import time
from pathlib import Path

import pytest

from loader.dependencies import dependents_of, expand_reloads
from loader.plan import ReconciliationPlan
from loader.reconciler import Reconciler, inline_executor, loop_executor
from runtime.registry import ScriptRegistry
from runtime.script import Script, ScriptState
from tests.conftest import FakeWatch, RecordingEngine, write_script
from watcher.debouncer import ChangeKind


def paths(*values: str) -> list[Path]:
    return [Path(v) for v in values]


class TestReconciliationPlan:
    """Test cases for ReconciliationPlan."""

    def test_load_wins_over_reload(self):
        plan = ReconciliationPlan()
        plan.add_reload(Path("a.py"))
        plan.add_load(Path("a.py"))
        plan.add_reload(Path("a.py"))

        assert plan.to_load == paths("a.py")
        assert plan.to_reload == []

    def test_empty(self):
        plan = ReconciliationPlan()

        assert plan.is_empty
        assert not plan.changed
        assert plan.summary()["to_load"] == []


class TestDependencyExpansion:
    """Test cases for dependents_of and expand_reloads."""

    @pytest.fixture
    def registry(self, script_root: Path, engine: RecordingEngine, reconciler: Reconciler) -> ScriptRegistry:
        registry = ScriptRegistry()
        for name, deps in {"a.py": [], "b.py": ["a.py"], "c.py": ["b.py"], "d.py": []}.items():
            script = Script(Path(name), directory=script_root, engine=engine, watch_target=reconciler)
            for dep in deps:
                script.depend(dep)
            registry.register(script)
        return registry

    def test_dependents_of(self, registry: ScriptRegistry):
        assert dependents_of(registry, Path("a.py")) == paths("b.py")
        assert dependents_of(registry, Path("d.py")) == []

    def test_transitive(self, registry: ScriptRegistry):
        assert expand_reloads(registry, paths("a.py")) == paths("a.py", "b.py", "c.py")

    def test_each_path_once(self, registry: ScriptRegistry):
        assert expand_reloads(registry, paths("b.py", "a.py", "b.py")) == paths("b.py", "a.py", "c.py")

    def test_exclude(self, registry: ScriptRegistry):
        assert expand_reloads(registry, paths("a.py"), exclude={Path("b.py")}) == paths("a.py")

    def test_unregistered_changed_path_is_kept(self, registry: ScriptRegistry):
        assert expand_reloads(registry, paths("config.json")) == paths("config.json")

    def test_cycle_terminates(self, registry: ScriptRegistry):
        registry.get(Path("a.py")).depend("c.py")

        assert sorted(expand_reloads(registry, paths("c.py"))) == paths("a.py", "b.py", "c.py")


class TestReconcile:
    """Test cases for a single reconciliation cycle."""

    def test_nothing_watched(self, reconciler: Reconciler, fake_watch: FakeWatch):
        plan = reconciler.reconcile()

        assert plan.is_empty
        assert fake_watch.started == 1

    def test_idempotent_without_changes(self, reconciler: Reconciler, script_root: Path):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        for _ in range(3):
            plan = reconciler.reconcile()
            assert plan.is_empty
            assert not plan.changed

    def test_watched_file_loads_once_created(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        reconciler.watch(["a.py"])
        assert reconciler.reconcile().is_empty

        write_script(script_root, "a.py")
        fake_watch.push("a.py", ChangeKind.CREATED)
        plan = reconciler.reconcile()

        assert plan.to_load == paths("a.py")
        assert plan.reload_queue == []
        script = reconciler.get("a.py")
        assert script.state is ScriptState.RUNNING
        assert len(engine.executed("a.py")) == 1

    def test_created_event_for_unwatched_file_is_ignored(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "stray.py")
        fake_watch.push("stray.py", ChangeKind.CREATED)

        plan = reconciler.reconcile()

        assert plan.to_load == []
        assert reconciler.get("stray.py") is None

    def test_modification_reloads(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        old = reconciler.get("a.py")

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        new = reconciler.get("a.py")
        assert plan.reloaded == paths("a.py")
        assert new is not old
        assert new.state is ScriptState.RUNNING
        assert old.state is ScriptState.TERMINATED

    def test_new_instance_runs_before_old_terminates(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        states_seen: list[ScriptState] = []
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        old = reconciler.get("a.py")
        engine.behaviors["a.py"] = lambda ctx: states_seen.append(old.state)

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        reconciler.reconcile()
        new = reconciler.get("a.py")

        assert states_seen == [ScriptState.RUNNING]
        assert engine.index_of("execute", new.context) < engine.index_of("release", old.context)

    def test_transitive_invalidation(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        for name in ("a.py", "b.py", "c.py"):
            write_script(script_root, name)
        engine.behaviors["b.py"] = lambda ctx: ctx.depend("a.py")
        engine.behaviors["c.py"] = lambda ctx: ctx.depend("b.py")
        reconciler.watch(["a.py", "b.py", "c.py"])
        reconciler.reconcile()

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert sorted(plan.reload_queue) == paths("a.py", "b.py", "c.py")
        assert sorted(plan.reloaded) == paths("a.py", "b.py", "c.py")
        for name in ("a.py", "b.py", "c.py"):
            assert len(engine.executed(name)) == 2

    def test_dependency_cycle_reloads_each_once(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "b.py")
        engine.behaviors["a.py"] = lambda ctx: ctx.depend("b.py")
        engine.behaviors["b.py"] = lambda ctx: ctx.depend("a.py")
        reconciler.watch(["a.py", "b.py"])
        reconciler.reconcile()

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert sorted(plan.reloaded) == paths("a.py", "b.py")

    def test_unwatched_dependency_change_reloads_dependents(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "config.json", "{}")
        engine.behaviors["a.py"] = lambda ctx: ctx.depend("config.json")
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        fake_watch.push("config.json", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert plan.to_reload == paths("config.json")
        assert plan.reloaded == paths("a.py")
        assert reconciler.get("config.json") is None

    def test_loading_a_dependency_reloads_its_dependents(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "b.py")
        engine.behaviors["b.py"] = lambda ctx: ctx.depend("lib.py")
        reconciler.watch(["lib.py", "b.py"])
        reconciler.reconcile()

        write_script(script_root, "lib.py")
        fake_watch.push("lib.py", ChangeKind.CREATED)
        plan = reconciler.reconcile()

        assert plan.loaded == paths("lib.py")
        assert plan.reloaded == paths("b.py")

    def test_deleted_file_unloads(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        script = reconciler.get("a.py")

        (script_root / "a.py").unlink()
        fake_watch.push("a.py", ChangeKind.DELETED)
        plan = reconciler.reconcile()

        assert list(plan.to_unload) == paths("a.py")
        assert script.state is ScriptState.TERMINATED
        assert reconciler.get("a.py") is None
        assert reconciler.watched() == paths("a.py")

    def test_delete_then_recreate_in_one_cycle_loads(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        write_script(script_root, "a.py")
        fake_watch.push("a.py", ChangeKind.DELETED)
        fake_watch.push("a.py", ChangeKind.CREATED)
        plan = reconciler.reconcile()

        assert plan.to_load == paths("a.py")
        assert Path("a.py") not in plan.to_unload
        assert reconciler.get("a.py").state is ScriptState.RUNNING

    def test_stale_delete_of_loaded_script_reloads(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        old = reconciler.get("a.py")

        fake_watch.push("a.py", ChangeKind.DELETED)
        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert Path("a.py") not in plan.to_unload
        assert plan.reloaded == paths("a.py")
        assert reconciler.get("a.py") is not old

    def test_unwatch_unloads(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        script = reconciler.get("a.py")

        reconciler.unwatch(["a.py"])
        plan = reconciler.reconcile()

        assert plan.unloaded == paths("a.py")
        assert script.state is ScriptState.TERMINATED
        assert reconciler.scripts() == []
        assert engine.calls[-1][0] == "release"

    def test_event_for_unloading_path_is_skipped(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "b.py")
        engine.behaviors["b.py"] = lambda ctx: ctx.depend("a.py")
        reconciler.watch(["a.py", "b.py"])
        reconciler.reconcile()
        b = reconciler.get("b.py")

        reconciler.unwatch(["a.py"])
        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert plan.unloaded == paths("a.py")
        assert plan.to_reload == []
        assert plan.reload_queue == []
        assert reconciler.get("b.py") is b

    def test_operator_watch_is_idempotent(self, reconciler: Reconciler, script_root: Path):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        reconciler.unwatch(["a.py"])

        assert reconciler.watched() == []

    def test_watch_claims_are_counted(self, reconciler: Reconciler):
        reconciler.watch_all(["a.py"])
        reconciler.watch_all(["a.py"])
        reconciler.unwatch_all(["a.py"])

        assert reconciler.watched() == paths("a.py")

        reconciler.unwatch_all(["a.py"])
        assert reconciler.watched() == []

    def test_reload_keeps_scoped_watches(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "b.py")
        engine.behaviors["a.py"] = lambda ctx: ctx.loader.watch("b.py")
        reconciler.watch(["a.py"])
        reconciler.preload()
        b = reconciler.get("b.py")

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        reconciler.reconcile()

        assert Path("b.py") in reconciler.watched()
        assert reconciler.reconcile().is_empty
        assert reconciler.get("b.py") is b

    def test_unloading_a_script_releases_its_watches(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "b.py")
        engine.behaviors["a.py"] = lambda ctx: ctx.loader.watch("b.py")
        reconciler.watch(["a.py"])
        reconciler.preload()

        reconciler.unwatch(["a.py"])
        first = reconciler.reconcile()
        second = reconciler.reconcile()

        assert first.unloaded == paths("a.py")
        assert second.unloaded == paths("b.py")
        assert reconciler.scripts() == []

    def test_unwatch_path_watched_by_a_script(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine
    ):
        write_script(script_root, "init.py")
        write_script(script_root, "p.py")
        engine.behaviors["init.py"] = lambda ctx: ctx.loader.watch("p.py")
        reconciler.watch(["init.py"])
        reconciler.preload()
        p = reconciler.get("p.py")

        reconciler.unwatch(["p.py"])
        plan = reconciler.reconcile()

        assert reconciler.watched() == paths("init.py")
        assert Path("p.py") in plan.to_unload
        assert p.state is ScriptState.TERMINATED
        assert reconciler.get("init.py") is not None

    def test_exports_survive_reload(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        seen: list[int] = []

        def count_runs(ctx):
            runs = ctx.exports.get("runs", 0) + 1
            ctx.exports.set("runs", runs)
            seen.append(runs)

        write_script(script_root, "a.py")
        engine.behaviors["a.py"] = count_runs
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        old = reconciler.get("a.py")

        fake_watch.push("a.py", ChangeKind.MODIFIED)
        reconciler.reconcile()

        assert seen == [1, 2]
        assert reconciler.get("a.py").context.exports is old.context.exports
        assert reconciler.exports.get("RUNS") == 2

    def test_run_failure_keeps_instance_registered(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        engine.failures.add("a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        failed = reconciler.get("a.py")
        assert failed.error is not None
        assert reconciler.reconcile().is_empty

        engine.failures.clear()
        fake_watch.push("a.py", ChangeKind.MODIFIED)
        reconciler.reconcile()

        assert reconciler.get("a.py").error is None

    def test_termination_failure_does_not_block_others(
        self, reconciler: Reconciler, script_root: Path
    ):
        write_script(script_root, "a.py")
        write_script(script_root, "b.py")
        reconciler.watch(["a.py", "b.py"])
        reconciler.reconcile()
        a, b = reconciler.get("a.py"), reconciler.get("b.py")
        a.resources.defer(lambda: 1 / 0)

        reconciler.unwatch(["a.py", "b.py"])
        reconciler.reconcile()

        assert a.state is ScriptState.TERMINATED
        assert b.state is ScriptState.TERMINATED


class TestWatchRecovery:
    """Test cases for watch failures."""

    def test_failed_rearm_recreates_watch(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        fake_watch.rearm_results.append(False)
        fake_watch.push("a.py", ChangeKind.MODIFIED)
        plan = reconciler.reconcile()

        assert fake_watch.recreates == 1
        assert plan.reloaded == paths("a.py")

    def test_recreate_error_does_not_abort_cycle(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        fake_watch.rearm_results.append(False)
        fake_watch.recreate_error = OSError("gone")

        plan = reconciler.reconcile()

        assert plan.loaded == paths("a.py")

    def test_poll_error_is_logged(
        self, reconciler: Reconciler, script_root: Path, fake_watch: FakeWatch
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        fake_watch.poll_error = OSError("queue overflow")

        plan = reconciler.reconcile()

        assert plan.loaded == paths("a.py")


class TestPreload:
    """Test cases for preload."""

    def test_settles_chain(
        self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine
    ):
        for name in ("a.py", "b.py", "c.py"):
            write_script(script_root, name)
        engine.behaviors["a.py"] = lambda ctx: ctx.loader.watch("b.py")
        engine.behaviors["b.py"] = lambda ctx: (ctx.depend("a.py"), ctx.loader.watch("c.py"))
        engine.behaviors["c.py"] = lambda ctx: ctx.depend("b.py")
        reconciler.watch(["a.py"])

        cycles = reconciler.preload()

        assert cycles <= 3
        assert sorted(s.path for s in reconciler.scripts()) == paths("a.py", "b.py", "c.py")
        assert all(s.state is ScriptState.RUNNING for s in reconciler.scripts())
        assert reconciler.reconcile().is_empty

    def test_cycle_limit(self, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch):
        for i in range(5):
            write_script(script_root, f"s{i}.py")
            engine.behaviors[f"s{i}.py"] = lambda ctx, i=i: ctx.loader.watch(f"s{i + 1}.py")
        reconciler = Reconciler(
            script_root, engine, watch=fake_watch, executor=inline_executor, preload_max_cycles=2
        )
        reconciler.watch(["s0.py"])

        assert reconciler.preload() == 2
        reconciler.shutdown()


class TestExecutors:
    """Test cases for handing side effects off the reconciling thread."""

    def test_side_effects_wait_for_executor(
        self, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        tasks = []
        reconciler = Reconciler(script_root, engine, watch=fake_watch, executor=tasks.append)
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])

        reconciler.reconcile()
        script = reconciler.get("a.py")

        assert script.state is ScriptState.CREATED
        assert engine.calls == []

        tasks.pop()()
        assert script.state is ScriptState.RUNNING
        reconciler.shutdown()

    def test_closed_executor_still_terminates_replaced_instances(
        self, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        closed = False

        def executor(task):
            if closed:
                raise RuntimeError("cannot schedule new futures after shutdown")
            task()

        reconciler = Reconciler(script_root, engine, watch=fake_watch, executor=executor)
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()
        old = reconciler.get("a.py")

        closed = True
        fake_watch.push("a.py", ChangeKind.MODIFIED)
        reconciler.reconcile()

        new = reconciler.get("a.py")
        assert old.state is ScriptState.TERMINATED
        assert new.state is ScriptState.CREATED

        reconciler.shutdown()
        assert new.state is ScriptState.TERMINATED

    def test_default_executor_thread(
        self, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        threads: list[str] = []
        engine.behaviors["a.py"] = lambda ctx: threads.append(threading.current_thread().name)
        reconciler = Reconciler(script_root, engine, watch=fake_watch)
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])

        reconciler.reconcile()
        reconciler.shutdown()

        assert len(threads) == 1
        assert threads[0] != threading.current_thread().name
        assert [kind for kind, _, _ in engine.calls] == ["execute", "release"]

    @pytest.mark.asyncio
    async def test_loop_executor(
        self, script_root: Path, engine: RecordingEngine, fake_watch: FakeWatch
    ):
        idents: list[int] = []
        engine.behaviors["a.py"] = lambda ctx: idents.append(threading.get_ident())
        reconciler = Reconciler(
            script_root, engine, watch=fake_watch, executor=loop_executor(asyncio.get_running_loop())
        )
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])

        await asyncio.to_thread(reconciler.reconcile)
        await asyncio.sleep(0)

        assert idents == [threading.get_ident()]
        reconciler.shutdown()


class TestLifecycle:
    """Test cases for the poll loop and shutdown."""

    def test_poll_loop_loads_and_shutdown_terminates(
        self, reconciler: Reconciler, script_root: Path
    ):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])

        reconciler.start()
        assert reconciler.is_running

        deadline = time.monotonic() + 5
        while reconciler.get("a.py") is None and time.monotonic() < deadline:
            time.sleep(0.01)
        script = reconciler.get("a.py")
        assert script is not None

        reconciler.shutdown()

        assert not reconciler.is_running
        assert script.state is ScriptState.TERMINATED
        assert reconciler.scripts() == []
        assert reconciler.reconcile().is_empty

    def test_start_after_shutdown_raises(self, reconciler: Reconciler, fake_watch: FakeWatch):
        reconciler.shutdown()

        with pytest.raises(RuntimeError):
            reconciler.start()
        assert fake_watch.stopped == 1

    def test_shutdown_is_idempotent(self, reconciler: Reconciler, script_root: Path, engine: RecordingEngine):
        write_script(script_root, "a.py")
        reconciler.watch(["a.py"])
        reconciler.reconcile()

        reconciler.shutdown()
        reconciler.shutdown()

        assert [kind for kind, _, _ in engine.calls].count("release") == 1
