from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

UTC = timezone.utc

SCRIPT_TYPES = {"Python", "Bash"}
SCRIPT_SUFFIXES = {"Python": ".py", "Bash": ".sh"}
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
VALID_STATUSES = {STATUS_SUCCESS, STATUS_FAILED}
MAX_EXECUTIONS = 20


def new_id() -> str:
    """Time-derived identifier, unique enough for scripts and executions."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class Execution:
    id: str
    status: str
    timestamp: datetime
    log: str
    runtime: int
    triggered_by_schedule: bool

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "log": self.log,
            "runtime": self.runtime,
            "triggeredBySchedule": self.triggered_by_schedule,
        }

    @staticmethod
    def from_payload(raw: Dict[str, Any]) -> "Execution":
        status = raw.get("status")
        if status not in VALID_STATUSES:
            raise ValueError(f'unknown execution status "{status}"')
        timestamp = datetime.fromisoformat(str(raw["timestamp"]).replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return Execution(
            id=str(raw["id"]),
            status=status,
            timestamp=timestamp,
            log=str(raw.get("log") or ""),
            runtime=int(raw.get("runtime") or 0),
            triggered_by_schedule=bool(raw.get("triggeredBySchedule", False)),
        )


@dataclass
class Script:
    id: str
    name: str
    type: str
    code: str
    dependencies: str = ""
    tags: List[str] = field(default_factory=list)
    schedules: List[str] = field(default_factory=list)
    executions: List[Execution] = field(default_factory=list)
    is_scheduler_enabled: bool = True

    def __post_init__(self) -> None:
        if self.type not in SCRIPT_TYPES:
            raise ValueError(f'unsupported script type "{self.type}"; expected one of {sorted(SCRIPT_TYPES)}')
        self.tags = list(dict.fromkeys(self.tags))

    @property
    def suffix(self) -> str:
        return SCRIPT_SUFFIXES[self.type]

    def with_execution(self, execution: Execution) -> "Script":
        """Copy with ``execution`` prepended, history capped to the newest entries."""
        return replace(self, executions=[execution, *self.executions][:MAX_EXECUTIONS])

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "code": self.code,
            "dependencies": self.dependencies,
            "tags": list(self.tags),
            "schedules": list(self.schedules),
            "executions": [execution.to_payload() for execution in self.executions],
            "isSchedulerEnabled": self.is_scheduler_enabled,
        }

    @staticmethod
    def from_payload(raw: Dict[str, Any]) -> "Script":
        executions = [Execution.from_payload(item) for item in raw.get("executions") or []]
        return Script(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            type=str(raw.get("type") or ""),
            code=str(raw.get("code") or ""),
            dependencies=str(raw.get("dependencies") or ""),
            tags=[str(tag) for tag in raw.get("tags") or []],
            schedules=[str(schedule) for schedule in raw.get("schedules") or []],
            executions=executions[:MAX_EXECUTIONS],
            is_scheduler_enabled=bool(raw.get("isSchedulerEnabled", True)),
        )


@dataclass
class SchedulerState:
    global_enabled: bool = True
    script_states: Dict[str, bool] = field(default_factory=dict)

    def script_enabled(self, script_id: str) -> bool:
        return self.script_states.get(script_id, True)

    def allows(self, script_id: str) -> bool:
        return self.global_enabled and self.script_enabled(script_id)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "globalEnabled": self.global_enabled,
            "scriptStates": dict(self.script_states),
        }

    @staticmethod
    def from_payload(raw: Dict[str, Any]) -> "SchedulerState":
        if "globalEnabled" not in raw and "isEnabled" in raw:
            # Legacy single-flag document.
            return SchedulerState(global_enabled=bool(raw["isEnabled"]), script_states={})
        states = raw.get("scriptStates") or {}
        if not isinstance(states, dict):
            raise ValueError("scriptStates must be a mapping")
        return SchedulerState(
            global_enabled=bool(raw.get("globalEnabled", True)),
            script_states={str(key): bool(value) for key, value in states.items()},
        )


def find_script(scripts: List[Script], script_id: str) -> Optional[Script]:
    return next((script for script in scripts if script.id == script_id), None)
