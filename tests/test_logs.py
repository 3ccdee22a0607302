from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from foreman.logs import EventLog


def test_entries_are_json_lines_with_levels(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "logs")
    events.info("s1", "started", {"scriptId": "s1"})
    events.warn("s1", "careful")
    events.error("s1", "broke", {"error": "boom"})
    events.close()

    entries = events.entries("s1")
    assert [entry["level"] for entry in entries] == ["INFO", "WARN", "ERROR"]
    assert entries[0]["metadata"] == {"scriptId": "s1"}
    assert "metadata" not in entries[1]
    assert entries[2]["message"] == "broke"
    assert entries[0]["timestamp"].endswith("+00:00")


def test_unknown_level_rejected(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "logs")
    with pytest.raises(ValueError, match="unknown log level"):
        events.log("s1", "debug", "nope")


def test_subject_is_sanitized_into_logs_dir(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "logs")
    path = events.path_for("../escape/me")
    assert path.parent == tmp_path / "logs"
    assert "/" not in path.name


def test_files_rotate_by_size(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "logs", max_bytes=400, backup_count=2)
    for idx in range(40):
        events.info("s1", f"entry {idx}", {"idx": idx})
    events.close()

    base = events.path_for("s1")
    assert base.with_name(f"{base.name}.1").exists()
    assert not base.with_name(f"{base.name}.3").exists()
    entries = events.entries("s1")
    assert entries[-1]["metadata"]["idx"] == 39
    assert len(entries) < 40


def test_recent_executions_newest_first(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "logs")
    events.info("scheduler", "not an execution")
    for idx in range(25):
        events.info(
            "s1",
            "Script execution completed",
            {"id": f"exec-{idx}", "status": "success", "runtime": idx, "triggeredBySchedule": False},
        )
    events.close()

    rows = events.recent_executions("s1")
    assert len(rows) == 20
    assert rows[0]["id"] == "exec-24"
    assert rows[-1]["id"] == "exec-5"
    assert events.recent_executions("scheduler") == []


def test_cleanup_removes_only_expired_closed_files(tmp_path: Path) -> None:
    logs_dir = tmp_path / "logs"
    events = EventLog(logs_dir, max_age_days=30)
    events.info("active", "still writing")

    expired = logs_dir / "old.log.1"
    expired.write_text("{}\n", encoding="utf-8")
    fresh = logs_dir / "recent.log"
    fresh.write_text("{}\n", encoding="utf-8")
    stale = time.time() - 40 * 86400
    os.utime(expired, (stale, stale))
    os.utime(events.path_for("active"), (stale, stale))

    assert events.cleanup() == 1
    assert not expired.exists()
    assert fresh.exists()
    assert events.path_for("active").exists()
    events.close()
