"""
Scheduler controller.

Translates configuration changes (flags, schedules, script records) into Job
Registry calls. Stores are always written before the registry is touched, so
a store failure leaves the registry as it was.

Firing callbacks never trust state captured at scheduling time: each firing
re-reads the scheduler state and the script record before executing.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from foreman.cron import parse_cron
from foreman.errors import ForemanError, InvalidScheduleExpression, ScriptNotFound, StoreIOFailure
from foreman.executor import ScriptExecutor
from foreman.logs import SCHEDULER_SUBJECT, EventLog
from foreman.models import Execution, SchedulerState, Script, find_script, new_id
from foreman.registry import FireCallback, JobKey, JobRegistry
from foreman.state import SchedulerStateStore
from foreman.store import ScriptStore

logger = logging.getLogger(__name__)


def _normalized(schedules: Iterable[str]) -> List[str]:
    return [" ".join(schedule.split()) for schedule in schedules]


def _enabled_text(enabled: bool) -> str:
    return "Enabled" if enabled else "Disabled"


class SchedulerController:
    def __init__(
        self,
        store: ScriptStore,
        state_store: SchedulerStateStore,
        registry: JobRegistry,
        executor: ScriptExecutor,
        events: Optional[EventLog] = None,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.registry = registry
        self.executor = executor
        self.events = events
        self._lock = threading.RLock()
        self._seen: Optional[tuple] = None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def initialize(self) -> int:
        """Rebuild the registry from persisted state; returns how many jobs were registered.

        The stores are read before anything is stopped, so an unreadable
        document leaves the current jobs running.
        """
        with self._lock:
            fingerprint = self._fingerprint()
            loaded = self._load()
            if loaded is None:
                return 0
            scripts, state = loaded
            self._seen = fingerprint
            self.registry.stop_all()

            logger.info(
                "Initializing scheduler: global=%s, scripts=%s",
                _enabled_text(state.global_enabled),
                len(scripts),
            )
            registered = 0
            for script, schedule in self._pairs(scripts):
                self.registry.upsert(script.id, schedule, state.allows(script.id), self._callback(script.id, schedule))
                registered += 1
            self._event(
                "info",
                "Scheduler initialized",
                {"globalEnabled": state.global_enabled, "scripts": len(scripts), "jobs": registered},
            )
            return registered

    def reconcile(self) -> int:
        """Bring the registry in line with the stores; returns how many jobs changed.

        Jobs whose key and activity already match are left untouched and keep
        their next fire time.
        """
        with self._lock:
            fingerprint = self._fingerprint()
            loaded = self._load()
            if loaded is None:
                return 0
            scripts, state = loaded
            self._seen = fingerprint

            desired: Dict[JobKey, bool] = {
                (script.id, schedule): state.allows(script.id) for script, schedule in self._pairs(scripts)
            }
            changed = 0
            for script_id, schedule in self.registry.keys():
                if (script_id, schedule) not in desired:
                    self.registry.stop(script_id, schedule)
                    changed += 1
            for (script_id, schedule), active in desired.items():
                job = self.registry.get(script_id, schedule)
                if job is None:
                    self.registry.upsert(script_id, schedule, active, self._callback(script_id, schedule))
                    changed += 1
                elif job.running != active:
                    self.registry.set_active(script_id, schedule, active)
                    changed += 1
            if changed:
                logger.info("Reconciled scheduler with stores: %s job change(s)", changed)
            return changed

    def refresh(self) -> bool:
        """Reconcile if either document was replaced since the last load."""
        if self._fingerprint() == self._seen:
            return False
        self.reconcile()
        return True

    def set_global_enabled(self, enabled: bool) -> SchedulerState:
        with self._lock:
            state = self.state_store.set_global(enabled)
            for script_id, schedule in self.registry.keys():
                self.registry.set_active(script_id, schedule, enabled and state.script_enabled(script_id))
            logger.info("Global scheduler state updated to: %s", _enabled_text(enabled))
            self._event("info", f"Global scheduler state updated to: {_enabled_text(enabled)}")
            return state

    def set_script_enabled(self, script_id: str, enabled: bool) -> SchedulerState:
        with self._lock:
            self.store.get(script_id)
            state = self.state_store.set_script(script_id, enabled)
            script = self.store.update(script_id, lambda s: replace(s, is_scheduler_enabled=enabled))
            for schedule in script.schedules:
                if self.registry.get(script_id, schedule) is not None:
                    self.registry.set_active(script_id, schedule, enabled and state.global_enabled)
                elif enabled:
                    self._upsert(script_id, schedule, state)
            logger.info("Script %s (ID: %s) scheduler state updated: %s", script.name, script_id, _enabled_text(enabled))
            self._event(
                "info",
                f"Script {script.name} (ID: {script_id}) scheduler state updated",
                {"isEnabled": enabled},
            )
            return state

    def add_schedule(self, script_id: str, cron_expr: str) -> Script:
        expr = parse_cron(cron_expr)
        with self._lock:
            state = self.state_store.load()
            added = False

            def append(script: Script) -> Script:
                nonlocal added
                if expr in _normalized(script.schedules):
                    return script
                added = True
                return replace(script, schedules=[*script.schedules, expr])

            script = self.store.update(script_id, append)
            if not added:
                logger.info("Schedule %r already present for %s; nothing to do.", expr, script_id)
                return script
            self._upsert(script_id, expr, state)
            self._event("info", f"Added schedule for script {script_id}: {expr}")
            return script

    def remove_schedule(self, script_id: str, cron_expr: str) -> Script:
        expr = " ".join(cron_expr.split())
        with self._lock:
            script = self.store.update(
                script_id,
                lambda s: replace(s, schedules=[item for item in s.schedules if " ".join(item.split()) != expr]),
            )
            self.registry.stop(script_id, expr)
            self._event("info", f"Removed schedule for script {script_id}: {expr}")
            return script

    # ------------------------------------------------------------------
    # Script records
    # ------------------------------------------------------------------

    def create_script(
        self,
        name: str,
        script_type: str,
        code: str,
        dependencies: str = "",
        tags: Iterable[str] = (),
        schedules: Iterable[str] = (),
    ) -> Script:
        parsed = list(dict.fromkeys(parse_cron(schedule) for schedule in schedules))
        try:
            script = Script(
                id=new_id(),
                name=name,
                type=script_type,
                code=code,
                dependencies=dependencies,
                tags=list(tags),
                schedules=parsed,
            )
        except ValueError as exc:
            raise ForemanError(f"Error: {exc}") from exc
        with self._lock:
            state = self.state_store.load()
            self.store.mutate(lambda scripts: scripts.append(script))
            for schedule in script.schedules:
                self._upsert(script.id, schedule, state)
        logger.info("Created script %s (ID: %s)", script.name, script.id)
        return script

    def update_script(
        self,
        script_id: str,
        name: Optional[str] = None,
        script_type: Optional[str] = None,
        code: Optional[str] = None,
        dependencies: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        schedules: Optional[Iterable[str]] = None,
    ) -> Script:
        """Update editable fields; execution history is never touched here."""
        new_schedules = None
        if schedules is not None:
            new_schedules = list(dict.fromkeys(parse_cron(schedule) for schedule in schedules))
        with self._lock:
            state = self.state_store.load()
            before = self.store.get(script_id)

            def apply(script: Script) -> Script:
                try:
                    return replace(
                        script,
                        name=script.name if name is None else name,
                        type=script.type if script_type is None else script_type,
                        code=script.code if code is None else code,
                        dependencies=script.dependencies if dependencies is None else dependencies,
                        tags=script.tags if tags is None else list(tags),
                        schedules=script.schedules if new_schedules is None else new_schedules,
                    )
                except ValueError as exc:
                    raise ForemanError(f"Error: {exc}") from exc

            script = self.store.update(script_id, apply)
            if new_schedules is not None:
                old = set(_normalized(before.schedules))
                for schedule in old - set(new_schedules):
                    self.registry.stop(script_id, schedule)
                for schedule in new_schedules:
                    if schedule not in old:
                        self._upsert(script_id, schedule, state)
            return script

    def delete_script(self, script_id: str) -> None:
        with self._lock:

            def remove(scripts: List[Script]) -> None:
                script = find_script(scripts, script_id)
                if script is None:
                    raise ScriptNotFound(script_id)
                scripts.remove(script)

            self.store.mutate(remove)
            self.state_store.forget_script(script_id)
            for job in self.registry.jobs_for(script_id):
                self.registry.stop(script_id, job.cron_expr)
        logger.info("Deleted script %s", script_id)
        self._event("info", f"Deleted script {script_id}")

    def run_now(self, script_id: str) -> Execution:
        script = self.store.get(script_id)
        return self.executor.execute(script, triggered_by_schedule=False)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _load(self) -> Optional[Tuple[List[Script], SchedulerState]]:
        try:
            return self.store.load(), self.state_store.load()
        except StoreIOFailure as exc:
            logger.error("Failed to load scheduler data; keeping current jobs: %s", exc)
            self._event("error", "Failed to load scheduler data", {"error": str(exc)})
            return None

    def _pairs(self, scripts: List[Script]) -> Iterator[Tuple[Script, str]]:
        for script in scripts:
            for schedule in script.schedules:
                try:
                    yield script, parse_cron(schedule)
                except InvalidScheduleExpression as exc:
                    logger.warning("Skipping schedule %r of %s: %s", schedule, script.id, exc)
                    self._event(
                        "warn",
                        f"Skipping invalid schedule for script {script.id}",
                        {"schedule": schedule, "error": str(exc)},
                    )

    def _fingerprint(self) -> Tuple[Optional[Tuple[int, int, int]], ...]:
        marks = []
        for path in (self.store.path, self.state_store.path):
            try:
                stat = os.stat(path)
            except OSError:
                marks.append(None)
                continue
            marks.append((stat.st_ino, stat.st_mtime_ns, stat.st_size))
        return tuple(marks)

    def _upsert(self, script_id: str, schedule: str, state: SchedulerState) -> None:
        self.registry.upsert(script_id, schedule, state.allows(script_id), self._callback(script_id, schedule))

    def _callback(self, script_id: str, schedule: str) -> FireCallback:
        def fire() -> None:
            self._fire(script_id, schedule)

        return fire

    def _fire(self, script_id: str, schedule: str) -> None:
        try:
            state = self.state_store.load()
        except StoreIOFailure as exc:
            logger.error("Skipping firing of %s (%s): %s", script_id, schedule, exc)
            self._event("error", f"Skipping execution of script {script_id}", {"error": str(exc)})
            return

        if not state.allows(script_id):
            logger.warning(
                "Skipping execution of script %s (global=%s, script=%s)",
                script_id,
                _enabled_text(state.global_enabled),
                _enabled_text(state.script_enabled(script_id)),
            )
            self._event(
                "warn",
                f"Skipping execution of script {script_id}",
                {
                    "schedule": schedule,
                    "globalScheduler": _enabled_text(state.global_enabled),
                    "scriptScheduler": _enabled_text(state.script_enabled(script_id)),
                },
            )
            return

        try:
            script = self.store.get(script_id)
        except ScriptNotFound:
            logger.warning("Skipping firing of %s (%s): script no longer exists", script_id, schedule)
            self._event("warn", f"Skipping execution of missing script {script_id}", {"schedule": schedule})
            return
        except StoreIOFailure as exc:
            logger.error("Skipping firing of %s (%s): %s", script_id, schedule, exc)
            self._event("error", f"Skipping execution of script {script_id}", {"error": str(exc)})
            return

        if " ".join(schedule.split()) not in _normalized(script.schedules):
            logger.warning("Skipping firing of %s (%s): schedule no longer on the script", script_id, schedule)
            self._event(
                "warn",
                f"Skipping execution of script {script_id}: schedule removed",
                {"schedule": schedule},
            )
            self.registry.stop(script_id, schedule)
            return

        logger.info("Executing scheduled script: %s (ID: %s)", script.name, script.id)
        self._event("info", f"Executing scheduled script: {script.name} (ID: {script.id})", {"schedule": schedule})
        self.executor.execute(script, triggered_by_schedule=True)

    def _event(self, level: str, message: str, metadata: Optional[dict] = None) -> None:
        if self.events is not None:
            self.events.log(SCHEDULER_SUBJECT, level, message, metadata)
