"""
JSON document stores.

Each document is read and replaced whole. Read-modify-write cycles go through
``mutate`` which holds an in-process lock and an exclusive ``flock`` on a
sibling lock file, and writes through a temporary file + ``os.replace``.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Callable, Iterator, List, TypeVar

from foreman.errors import ScriptNotFound, StoreIOFailure
from foreman.models import Execution, Script, find_script

_T = TypeVar("_T")


class JsonDocument:
    def __init__(self, path: Path, default: Callable[[], Any]) -> None:
        self.path = path
        self._default = default
        self._lock = threading.RLock()
        self._lock_file = path.with_name(f".{path.name}.lock")

    def read(self) -> Any:
        if not self.path.exists():
            return self._default()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreIOFailure(f"Error: Failed to read {self.path}: {exc}") from exc
        if not text.strip():
            return self._default()
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreIOFailure(f"Error: Failed to parse JSON in {self.path}: {exc}") from exc

    def write(self, payload: Any) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                    handle.write("\n")
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreIOFailure(f"Error: Failed to write {self.path}: {exc}") from exc

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            try:
                self._lock_file.parent.mkdir(parents=True, exist_ok=True)
                lockf = self._lock_file.open("a+")
            except OSError as exc:
                raise StoreIOFailure(f"Error: Failed to open lock file {self._lock_file}: {exc}") from exc
            with lockf:
                with _file_lock(lockf):
                    yield


@contextmanager
def _file_lock(file: IO) -> Iterator[None]:
    try:
        fcntl.flock(file.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(file.fileno(), fcntl.LOCK_UN)


class ScriptStore:
    """Durable list of scripts and their execution history."""

    def __init__(self, path: Path) -> None:
        self._doc = JsonDocument(path, default=list)

    @property
    def path(self) -> Path:
        return self._doc.path

    def load(self) -> List[Script]:
        with self._doc.locked():
            return self._load_unlocked()

    def save(self, scripts: List[Script]) -> None:
        with self._doc.locked():
            self._doc.write([script.to_payload() for script in scripts])

    def get(self, script_id: str) -> Script:
        script = find_script(self.load(), script_id)
        if script is None:
            raise ScriptNotFound(script_id)
        return script

    def mutate(self, fn: Callable[[List[Script]], _T]) -> _T:
        """Run ``fn`` on the loaded list and persist the (possibly modified) list."""
        with self._doc.locked():
            scripts = self._load_unlocked()
            result = fn(scripts)
            self._doc.write([script.to_payload() for script in scripts])
            return result

    def update(self, script_id: str, fn: Callable[[Script], Script]) -> Script:
        def apply(scripts: List[Script]) -> Script:
            for idx, script in enumerate(scripts):
                if script.id == script_id:
                    scripts[idx] = fn(script)
                    return scripts[idx]
            raise ScriptNotFound(script_id)

        return self.mutate(apply)

    def append_execution(self, script_id: str, execution: Execution) -> Script:
        """Prepend ``execution`` to the script's history and truncate, atomically."""
        return self.update(script_id, lambda script: script.with_execution(execution))

    def _load_unlocked(self) -> List[Script]:
        raw = self._doc.read()
        if not isinstance(raw, list):
            raise StoreIOFailure(f"Error: {self.path} must contain a JSON list of scripts.")
        scripts: List[Script] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, dict):
                raise StoreIOFailure(f"Error: {self.path}[{idx}] must be an object.")
            try:
                scripts.append(Script.from_payload(item))
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreIOFailure(f"Error: Invalid script record at {self.path}[{idx}]: {exc}") from exc
        return scripts
