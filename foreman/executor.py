from __future__ import annotations

import logging
import os
import subprocess
import sys
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from foreman.errors import ExecutionLaunchFailure, ScriptNotFound, StoreIOFailure
from foreman.logs import EventLog
from foreman.models import STATUS_FAILED, STATUS_SUCCESS, Execution, Script, new_id
from foreman.notify import KIND_FAILURE, KIND_SCHEDULED, KIND_SUCCESS
from foreman.store import ScriptStore

logger = logging.getLogger(__name__)

UTC = timezone.utc
STDERR_MARKER = "Errors/Warnings:"
LOG_PREVIEW_CHARS = 1000


class Notifier(Protocol):
    def notify(self, message: str, kind: str) -> bool: ...


def default_python() -> str:
    venv = os.environ.get("VIRTUAL_ENV")
    if venv:
        return str(Path(venv) / "bin" / "python")
    return sys.executable


def combine_output(stdout: str, stderr: str) -> str:
    if not stderr:
        return stdout
    return f"{stdout}\n{STDERR_MARKER}\n{stderr}"


def notification_kind(success: bool, triggered_by_schedule: bool) -> str:
    if not success:
        return KIND_FAILURE
    return KIND_SCHEDULED if triggered_by_schedule else KIND_SUCCESS


def build_script_env(script: Script, run_id: str, triggered_by_schedule: bool) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(
        {
            "FOREMAN_RUN_ID": run_id,
            "FOREMAN_SCRIPT_ID": script.id,
            "FOREMAN_SCRIPT_NAME": script.name,
            "FOREMAN_TRIGGER": "schedule" if triggered_by_schedule else "manual",
        }
    )
    return env


class ScriptExecutor:
    """Runs one script to completion as a child process and records the outcome."""

    def __init__(
        self,
        store: ScriptStore,
        scripts_dir: Path,
        events: Optional[EventLog] = None,
        notifier: Optional[Notifier] = None,
        python: Optional[str] = None,
        bash: str = "bash",
    ) -> None:
        self.store = store
        self.scripts_dir = scripts_dir
        self.events = events
        self.notifier = notifier
        self.python = python or default_python()
        self.bash = bash

    def interpreter_for(self, script: Script) -> List[str]:
        if script.type == "Python":
            return [self.python]
        return [self.bash]

    def execute(self, script: Script, triggered_by_schedule: bool = False) -> Execution:
        run_id = f"{script.id}:{datetime.now(tz=UTC).strftime('%Y%m%d%H%M%S')}-{os.getpid()}"
        trigger = "scheduled" if triggered_by_schedule else "manual"
        logger.info("[%s] Starting %s run of %s (%s)", run_id, trigger, script.name, script.type)

        timestamp = datetime.now(tz=UTC)
        started = time.monotonic()
        try:
            success, log = self._run(script, run_id, triggered_by_schedule)
        except ExecutionLaunchFailure as exc:
            success, log = False, str(exc)
            logger.error("[%s] Failed to launch %s: %s", run_id, script.name, log)
        runtime = int((time.monotonic() - started) * 1000)

        execution = Execution(
            id=new_id(),
            status=STATUS_SUCCESS if success else STATUS_FAILED,
            timestamp=timestamp,
            log=log,
            runtime=runtime,
            triggered_by_schedule=triggered_by_schedule,
        )
        if success:
            logger.info("[%s] Script succeeded: %s (%sms)", run_id, script.name, runtime)
        else:
            logger.error("[%s] Script failed: %s (%sms)", run_id, script.name, runtime)
        self._record(script, execution)
        return execution

    def _run(self, script: Script, run_id: str, triggered_by_schedule: bool) -> Tuple[bool, str]:
        script_path: Optional[Path] = None
        try:
            script_path = self._materialize(script)
            command = [*self.interpreter_for(script), str(script_path)]
            try:
                result = subprocess.run(
                    command,
                    capture_output=True,
                    text=True,
                    errors="replace",
                    check=False,
                    env=build_script_env(script, run_id, triggered_by_schedule),
                )
            except (OSError, ValueError) as exc:
                raise ExecutionLaunchFailure(str(exc)) from exc
            if result.returncode != 0:
                logger.error("[%s] Exit code %s", run_id, result.returncode)
            return result.returncode == 0, combine_output(result.stdout or "", result.stderr or "")
        finally:
            if script_path is not None:
                try:
                    script_path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("[%s] Failed to remove %s: %s", run_id, script_path, exc)

    def _materialize(self, script: Script) -> Path:
        try:
            self.scripts_dir.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(
                prefix=f"{script.id}-",
                suffix=script.suffix,
                dir=str(self.scripts_dir),
            )
        except OSError as exc:
            raise ExecutionLaunchFailure(str(exc)) from exc
        path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(script.code)
            path.chmod(0o700)
        except (OSError, ValueError) as exc:
            path.unlink(missing_ok=True)
            raise ExecutionLaunchFailure(str(exc)) from exc
        return path

    def _record(self, script: Script, execution: Execution) -> None:
        try:
            self.store.append_execution(script.id, execution)
        except (ScriptNotFound, StoreIOFailure) as exc:
            logger.error("Failed to record execution %s for %s: %s", execution.id, script.id, exc)

        if self.events is not None:
            summary = execution.to_payload()
            log_preview = summary.pop("log")[:LOG_PREVIEW_CHARS]
            if execution.success:
                self.events.info(script.id, "Script execution completed", {**summary, "log": log_preview})
            else:
                self.events.error(script.id, "Script execution failed", {**summary, "log": log_preview})

        self._notify(script, execution)

    def _notify(self, script: Script, execution: Execution) -> None:
        if self.notifier is None:
            return
        prefix = "Scheduled script" if execution.triggered_by_schedule else "Script"
        if execution.success:
            message = f'{prefix} "{script.name}" (ID: {script.id}) executed successfully.'
        else:
            message = f'{prefix} "{script.name}" (ID: {script.id}) failed to execute.\nError: {execution.log}'
        kind = notification_kind(execution.success, execution.triggered_by_schedule)
        try:
            self.notifier.notify(message, kind)
        except Exception as exc:
            logger.warning("Notification for %s failed: %s", script.id, str(exc))
