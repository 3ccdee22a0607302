from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Tuple

import pytest

from foreman.controller import SchedulerController
from foreman.errors import ForemanError, InvalidScheduleExpression, ScriptNotFound
from foreman.logs import EventLog
from foreman.models import STATUS_SUCCESS, Execution, Script
from foreman.registry import JobRegistry
from foreman.state import SchedulerStateStore
from foreman.store import ScriptStore

UTC = timezone.utc
START = datetime(2026, 3, 2, 12, 0, 30, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingExecutor:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, bool]] = []

    def execute(self, script: Script, triggered_by_schedule: bool = False) -> Execution:
        self.calls.append((script.id, triggered_by_schedule))
        return Execution(
            id=f"exec-{len(self.calls)}",
            status=STATUS_SUCCESS,
            timestamp=datetime.now(tz=UTC),
            log="",
            runtime=0,
            triggered_by_schedule=triggered_by_schedule,
        )


def run_inline(name: str, fn: Callable[[], None]) -> None:
    fn()


def _controller(tmp_path: Path, *scripts: Script) -> Tuple[SchedulerController, RecordingExecutor, FakeClock]:
    store = ScriptStore(tmp_path / "data" / "scripts.json")
    if scripts:
        store.save(list(scripts))
    clock = FakeClock(START)
    events = EventLog(tmp_path / "logs")
    executor = RecordingExecutor()
    controller = SchedulerController(
        store,
        SchedulerStateStore(tmp_path / "data" / "scheduler-state.json"),
        JobRegistry(events=events, spawner=run_inline, clock=clock),
        executor,  # type: ignore[arg-type]
        events=events,
    )
    return controller, executor, clock


def _script(script_id: str, *schedules: str) -> Script:
    return Script(id=script_id, name=f"name-{script_id}", type="Bash", code="echo hi\n", schedules=list(schedules))


def _tick(controller: SchedulerController, clock: FakeClock, minutes: int = 1) -> List[Tuple[str, str]]:
    clock.now = clock.now + timedelta(minutes=minutes)
    return controller.registry.fire_due(clock.now)


def test_initialize_is_idempotent(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1", "* * * * *", "0 0 * * *"), _script("s2", "*/5 * * * *"))
    controller.state_store.set_script("s2", False)

    assert controller.initialize() == 3
    first = (controller.registry.keys(), controller.registry.active_keys())
    assert controller.initialize() == 3
    second = (controller.registry.keys(), controller.registry.active_keys())

    assert first == second
    assert first[1] == [("s1", "* * * * *"), ("s1", "0 0 * * *")]


def test_initialize_skips_invalid_stored_schedule(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1", "* * * *", "0 0 * * *"))

    assert controller.initialize() == 1
    assert controller.registry.keys() == [("s1", "0 0 * * *")]


def test_initialize_with_unreadable_store_keeps_current_jobs(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1", "* * * * *"))
    controller.initialize()
    controller.store.path.write_text("{broken", encoding="utf-8")

    assert controller.initialize() == 0
    assert controller.registry.keys() == [("s1", "* * * * *")]
    assert controller.registry.active_keys() == [("s1", "* * * * *")]
    errors = [entry for entry in controller.events.entries("scheduler") if entry["level"] == "ERROR"]
    assert errors[-1]["message"] == "Failed to load scheduler data"


def test_global_disable_stops_all_firings_until_reenabled(tmp_path: Path) -> None:
    controller, executor, clock = _controller(tmp_path, _script("s1", "* * * * *"))
    controller.initialize()

    controller.set_global_enabled(False)
    for _ in range(5):
        assert _tick(controller, clock) == []
    assert executor.calls == []

    controller.set_global_enabled(True)
    _tick(controller, clock)
    assert executor.calls == [("s1", True)]


def test_global_enable_respects_per_script_override(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1", "* * * * *"), _script("s2", "* * * * *"))
    controller.initialize()
    controller.set_script_enabled("s2", False)

    controller.set_global_enabled(False)
    controller.set_global_enabled(True)

    assert controller.registry.active_keys() == [("s1", "* * * * *")]


def test_script_toggle_mirrors_flag_on_record(tmp_path: Path) -> None:
    controller, executor, clock = _controller(tmp_path, _script("s1", "* * * * *"))
    controller.initialize()

    state = controller.set_script_enabled("s1", False)
    assert state.script_states == {"s1": False}
    assert controller.store.get("s1").is_scheduler_enabled is False
    _tick(controller, clock)
    assert executor.calls == []

    controller.set_script_enabled("s1", True)
    assert controller.store.get("s1").is_scheduler_enabled is True
    _tick(controller, clock)
    assert executor.calls == [("s1", True)]


def test_script_toggle_for_unknown_script_has_no_side_effects(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1"))

    with pytest.raises(ScriptNotFound):
        controller.set_script_enabled("missing", False)

    assert not controller.state_store.path.exists()


def test_firing_skips_schedule_removed_by_another_process(tmp_path: Path) -> None:
    daemon, executor, clock = _controller(tmp_path, _script("s1", "* * * * *", "0 0 * * *"))
    daemon.initialize()
    other, _, _ = _controller(tmp_path)

    other.remove_schedule("s1", "*  * * * *")
    assert _tick(daemon, clock) == [("s1", "* * * * *")]

    assert executor.calls == []
    assert daemon.registry.keys() == [("s1", "0 0 * * *")]
    warnings = [entry for entry in daemon.events.entries("scheduler") if entry["level"] == "WARN"]
    assert warnings[-1]["message"] == "Skipping execution of script s1: schedule removed"


def test_refresh_is_a_no_op_without_outside_writes(tmp_path: Path) -> None:
    daemon, _, _ = _controller(tmp_path, _script("s1", "* * * * *"))
    daemon.initialize()

    assert daemon.refresh() is False
    assert daemon.reconcile() == 0


def test_refresh_applies_changes_from_another_process(tmp_path: Path) -> None:
    daemon, executor, clock = _controller(tmp_path, _script("s1", "0 0 * * *"), _script("s2", "0 0 * * *"))
    daemon.initialize()
    other, _, _ = _controller(tmp_path)

    other.add_schedule("s1", "* * * * *")
    other.remove_schedule("s2", "0 0 * * *")
    created = other.create_script("new", "Bash", "echo new\n", schedules=["*/5 * * * *"])

    assert daemon.refresh() is True
    assert daemon.registry.keys() == sorted(
        [("s1", "* * * * *"), ("s1", "0 0 * * *"), (created.id, "*/5 * * * *")]
    )

    assert _tick(daemon, clock) == [("s1", "* * * * *")]
    assert executor.calls == [("s1", True)]


def test_refresh_keeps_untouched_jobs_and_follows_flags(tmp_path: Path) -> None:
    daemon, _, _ = _controller(tmp_path, _script("s1", "0 0 * * *"), _script("s2", "0 0 * * *"))
    daemon.initialize()
    job = daemon.registry.get("s1", "0 0 * * *")
    other, _, _ = _controller(tmp_path)

    other.set_script_enabled("s2", False)

    assert daemon.refresh() is True
    assert daemon.registry.get("s1", "0 0 * * *") is job
    assert daemon.registry.keys() == [("s1", "0 0 * * *"), ("s2", "0 0 * * *")]
    assert daemon.registry.active_keys() == [("s1", "0 0 * * *")]

    other.set_global_enabled(False)
    assert daemon.refresh() is True
    assert daemon.registry.active_keys() == []


def test_refresh_with_unreadable_store_keeps_current_jobs(tmp_path: Path) -> None:
    daemon, _, _ = _controller(tmp_path, _script("s1", "* * * * *"))
    daemon.initialize()
    daemon.store.path.write_text("[{", encoding="utf-8")

    daemon.refresh()

    assert daemon.registry.active_keys() == [("s1", "* * * * *")]


def test_firing_rechecks_persisted_state(tmp_path: Path) -> None:
    controller, executor, clock = _controller(tmp_path, _script("s1", "* * * * *"))
    controller.initialize()

    # Another process flips the global flag without touching this registry.
    SchedulerStateStore(controller.state_store.path).set_global(False)
    assert _tick(controller, clock) == [("s1", "* * * * *")]

    assert executor.calls == []
    warnings = [entry for entry in controller.events.entries("scheduler") if entry["level"] == "WARN"]
    assert warnings[-1]["message"] == "Skipping execution of script s1"
    assert warnings[-1]["metadata"]["globalScheduler"] == "Disabled"
    assert warnings[-1]["metadata"]["scriptScheduler"] == "Enabled"


def test_firing_for_deleted_script_is_skipped(tmp_path: Path) -> None:
    controller, executor, clock = _controller(tmp_path, _script("s1", "* * * * *"))
    controller.initialize()
    controller.store.save([])

    _tick(controller, clock)

    assert executor.calls == []


def test_add_schedule_validates_and_registers(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1"))
    controller.initialize()
    before = controller.store.path.read_text(encoding="utf-8")

    with pytest.raises(InvalidScheduleExpression):
        controller.add_schedule("s1", "* * * *")
    assert controller.store.path.read_text(encoding="utf-8") == before

    script = controller.add_schedule("s1", "30  14 * * 1,3,5")
    assert script.schedules == ["30 14 * * 1,3,5"]
    assert controller.registry.active_keys() == [("s1", "30 14 * * 1,3,5")]

    again = controller.add_schedule("s1", "30 14 * * 1,3,5")
    assert again.schedules == ["30 14 * * 1,3,5"]


def test_add_schedule_unknown_script(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)
    with pytest.raises(ScriptNotFound):
        controller.add_schedule("missing", "0 0 * * *")
    assert controller.registry.keys() == []


def test_add_schedule_while_globally_disabled_stays_dormant(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1"))
    controller.set_global_enabled(False)

    controller.add_schedule("s1", "0 0 * * *")

    assert controller.registry.keys() == [("s1", "0 0 * * *")]
    assert controller.registry.active_keys() == []


def test_remove_schedule_stops_job(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, _script("s1", "0 0 * * *", "* * * * *"))
    controller.initialize()

    script = controller.remove_schedule("s1", "* * * * *")

    assert script.schedules == ["0 0 * * *"]
    assert controller.registry.keys() == [("s1", "0 0 * * *")]


def test_create_update_delete_script(tmp_path: Path) -> None:
    controller, executor, _ = _controller(tmp_path)

    with pytest.raises(ForemanError):
        controller.create_script("bad", "Ruby", "puts 1")
    with pytest.raises(InvalidScheduleExpression):
        controller.create_script("bad", "Bash", "true", schedules=["nope"])
    assert controller.store.load() == []

    script = controller.create_script("job", "Bash", "true", tags=["etl", "etl"], schedules=["0 0 * * *"])
    assert script.tags == ["etl"]
    assert controller.registry.active_keys() == [(script.id, "0 0 * * *")]

    controller.run_now(script.id)
    assert executor.calls == [(script.id, False)]

    controller.store.append_execution(script.id, executor.execute(script))
    updated = controller.update_script(script.id, name="renamed", schedules=["*/5 * * * *"])
    assert updated.name == "renamed"
    assert len(updated.executions) == 1
    assert controller.registry.keys() == [(script.id, "*/5 * * * *")]

    controller.set_script_enabled(script.id, False)
    controller.delete_script(script.id)
    assert controller.store.load() == []
    assert controller.registry.keys() == []
    assert script.id not in controller.state_store.load().script_states

    with pytest.raises(ScriptNotFound):
        controller.delete_script(script.id)


def test_run_now_unknown_script(tmp_path: Path) -> None:
    controller, executor, _ = _controller(tmp_path)
    with pytest.raises(ScriptNotFound):
        controller.run_now("missing")
    assert executor.calls == []
