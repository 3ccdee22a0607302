"""
Process logging setup and the per-subject event log.

The event log keeps one JSON-lines file per subject (a script id, or
``scheduler`` for registry/controller events) under the logs directory.
Files rotate by size; rotated files older than the retention window are
removed opportunistically rather than on every write.
"""

from __future__ import annotations

import json
import logging
import random
import re
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

UTC = timezone.utc

LOG_FILE = "foreman.log"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 10
DEFAULT_MAX_AGE_DAYS = 30
CLEANUP_PROBABILITY = 0.01
SCHEDULER_SUBJECT = "scheduler"
LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}
LEVEL_NAMES = {logging.INFO: "INFO", logging.WARNING: "WARN", logging.ERROR: "ERROR"}
SUBJECT_RE = re.compile(r"[^A-Za-z0-9_.\-]")


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("foreman")
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


logger = logging.getLogger(__name__)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": LEVEL_NAMES.get(record.levelno, record.levelname),
            "message": record.getMessage(),
        }
        metadata = getattr(record, "metadata", None)
        if metadata:
            entry["metadata"] = metadata
        return json.dumps(entry, default=str)


class EventLog:
    """Durable per-subject log sink."""

    def __init__(
        self,
        logs_dir: Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ) -> None:
        self.logs_dir = logs_dir
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.max_age_days = max_age_days
        self._loggers: Dict[str, logging.Logger] = {}
        self._lock = threading.Lock()

    def path_for(self, subject: str) -> Path:
        return self.logs_dir / f"{SUBJECT_RE.sub('_', subject)}.log"

    def log(self, subject: str, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if level not in LEVELS:
            raise ValueError(f'unknown log level "{level}"')
        try:
            self._logger_for(subject).log(LEVELS[level], message, extra={"metadata": metadata or {}})
        except OSError as exc:
            logger.warning("Failed to write %s log entry for %s: %s", level, subject, exc)
            return
        if random.random() < CLEANUP_PROBABILITY:
            self.cleanup()

    def info(self, subject: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(subject, "info", message, metadata)

    def warn(self, subject: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(subject, "warn", message, metadata)

    def error(self, subject: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(subject, "error", message, metadata)

    def cleanup(self, now: Optional[float] = None) -> int:
        """Delete log files past the retention window; returns how many were removed."""
        if not self.logs_dir.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - self.max_age_days * 86400
        with self._lock:
            open_files = {self.path_for(subject) for subject in self._loggers}
        removed = 0
        for path in self.logs_dir.glob("*.log*"):
            if path in open_files or not path.is_file():
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Failed to remove expired log %s: %s", path, exc)
        if removed:
            logger.info("Removed %s expired log file(s) from %s", removed, self.logs_dir)
        return removed

    def entries(self, subject: str) -> List[Dict[str, Any]]:
        """All readable entries for ``subject``, oldest file first."""
        base = self.path_for(subject)
        paths = [base.with_name(f"{base.name}.{idx}") for idx in range(self.backup_count, 0, -1)]
        paths.append(base)
        out: List[Dict[str, Any]] = []
        for path in paths:
            if not path.exists():
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict):
                    out.append(entry)
        return out

    def recent_executions(self, subject: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Execution summaries recorded in the log, newest first."""
        executions: List[Dict[str, Any]] = []
        for entry in self.entries(subject):
            metadata = entry.get("metadata") or {}
            if not isinstance(metadata, dict) or not metadata.get("status"):
                continue
            executions.append(
                {
                    "id": metadata.get("id"),
                    "status": metadata.get("status"),
                    "timestamp": entry.get("timestamp"),
                    "runtime": metadata.get("runtime"),
                    "triggeredBySchedule": metadata.get("triggeredBySchedule"),
                }
            )
        executions.reverse()
        executions.sort(key=lambda item: str(item["timestamp"]), reverse=True)
        return executions[:limit]

    def close(self) -> None:
        with self._lock:
            for subject_logger in self._loggers.values():
                for handler in list(subject_logger.handlers):
                    handler.close()
                    subject_logger.removeHandler(handler)
            self._loggers.clear()

    def _logger_for(self, subject: str) -> logging.Logger:
        with self._lock:
            subject_logger = self._loggers.get(subject)
            if subject_logger is not None:
                return subject_logger
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                self.path_for(subject),
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(JsonLineFormatter())
            # Not registered with the logging manager; released by close().
            subject_logger = logging.Logger(f"foreman.events.{subject}", logging.INFO)
            subject_logger.propagate = False
            subject_logger.addHandler(handler)
            self._loggers[subject] = subject_logger
            return subject_logger
