from __future__ import annotations

import logging
from pathlib import Path

from foreman.errors import StoreIOFailure
from foreman.models import SchedulerState
from foreman.store import JsonDocument

logger = logging.getLogger(__name__)


class SchedulerStateStore:
    """Durable global flag and per-script overrides.

    A legacy ``{"isEnabled": bool}`` document is read as the global flag with
    no overrides and is rewritten in the current shape on the next save.
    """

    def __init__(self, path: Path) -> None:
        self._doc = JsonDocument(path, default=lambda: SchedulerState().to_payload())

    @property
    def path(self) -> Path:
        return self._doc.path

    def load(self) -> SchedulerState:
        with self._doc.locked():
            return self._load_unlocked()

    def save(self, state: SchedulerState) -> None:
        with self._doc.locked():
            self._doc.write(state.to_payload())
        logger.info(
            "Scheduler state saved (global=%s, overrides=%s)",
            state.global_enabled,
            len(state.script_states),
        )

    def set_global(self, enabled: bool) -> SchedulerState:
        with self._doc.locked():
            state = self._load_unlocked()
            state.global_enabled = enabled
            self._doc.write(state.to_payload())
            return state

    def set_script(self, script_id: str, enabled: bool) -> SchedulerState:
        with self._doc.locked():
            state = self._load_unlocked()
            state.script_states[script_id] = enabled
            self._doc.write(state.to_payload())
            return state

    def forget_script(self, script_id: str) -> SchedulerState:
        with self._doc.locked():
            state = self._load_unlocked()
            if script_id in state.script_states:
                del state.script_states[script_id]
                self._doc.write(state.to_payload())
            return state

    def _load_unlocked(self) -> SchedulerState:
        raw = self._doc.read()
        if not isinstance(raw, dict):
            raise StoreIOFailure(f"Error: {self.path} must contain a JSON object.")
        try:
            return SchedulerState.from_payload(raw)
        except ValueError as exc:
            raise StoreIOFailure(f"Error: Invalid scheduler state in {self.path}: {exc}") from exc
