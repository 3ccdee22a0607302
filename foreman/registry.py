"""
In-memory registry of live cron timers, one per (script id, cron expression).

Timers do not own threads. ``run_forever`` polls ``fire_due`` which, under the
registry lock, advances every due timer past ``now`` and then hands each due
callback to the spawner; the default spawner starts one daemon thread per
firing so a long-running script never delays other jobs.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from foreman.cron import next_fire_after, parse_cron
from foreman.logs import SCHEDULER_SUBJECT, EventLog

logger = logging.getLogger(__name__)

UTC = timezone.utc

JobKey = Tuple[str, str]
FireCallback = Callable[[], None]
Spawner = Callable[[str, FireCallback], None]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def spawn_thread(name: str, fn: FireCallback) -> None:
    thread = threading.Thread(target=fn, daemon=True, name=name)
    thread.start()


def format_key(key: JobKey) -> str:
    return f"{key[0]}_{key[1]}"


@dataclass
class CronTimer:
    cron_expr: str
    timezone: ZoneInfo
    next_fire: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.next_fire is not None

    def start(self, now: datetime) -> None:
        self.next_fire = next_fire_after(self.cron_expr, now, self.timezone)

    def stop(self) -> None:
        self.next_fire = None

    def is_due(self, now: datetime) -> bool:
        return self.next_fire is not None and self.next_fire <= now

    def advance(self, now: datetime) -> None:
        # Missed ticks are not replayed; the next fire is always after ``now``.
        self.next_fire = next_fire_after(self.cron_expr, now, self.timezone)


@dataclass
class Job:
    key: JobKey
    timer: CronTimer
    on_fire: FireCallback = field(repr=False)
    fire_count: int = 0

    @property
    def script_id(self) -> str:
        return self.key[0]

    @property
    def cron_expr(self) -> str:
        return self.key[1]

    @property
    def running(self) -> bool:
        return self.timer.active


class JobRegistry:
    def __init__(
        self,
        timezone: ZoneInfo = ZoneInfo("UTC"),
        events: Optional[EventLog] = None,
        spawner: Spawner = spawn_thread,
        clock: Clock = utc_now,
    ) -> None:
        self.timezone = timezone
        self.events = events
        self._spawner = spawner
        self._clock = clock
        self._jobs: Dict[JobKey, Job] = {}
        self._lock = threading.RLock()

    def upsert(self, script_id: str, cron_expr: str, start_active: bool, on_fire: FireCallback) -> Job:
        """Create (or replace) the job for this key.

        Raises:
            InvalidScheduleExpression: the prior job, if any, is left in place.
        """
        expr = parse_cron(cron_expr)
        key: JobKey = (script_id, expr)
        with self._lock:
            previous = self._jobs.pop(key, None)
            if previous is not None:
                previous.timer.stop()
                self._log("Replaced existing job", key, "stopped")
            job = Job(key=key, timer=CronTimer(cron_expr=expr, timezone=self.timezone), on_fire=on_fire)
            if start_active:
                job.timer.start(self._clock())
            self._jobs[key] = job
        self._log(
            "Scheduled job",
            key,
            "started" if start_active else "created but not started",
            next_fire=job.timer.next_fire,
        )
        return job

    def stop(self, script_id: str, cron_expr: str) -> bool:
        key = self._key(script_id, cron_expr)
        with self._lock:
            job = self._jobs.pop(key, None)
            if job is None:
                return False
            job.timer.stop()
        self._log("Removed job", key, "stopped")
        return True

    def set_active(self, script_id: str, cron_expr: str, active: bool) -> bool:
        key = self._key(script_id, cron_expr)
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                return False
            if active and not job.timer.active:
                job.timer.start(self._clock())
            elif not active and job.timer.active:
                job.timer.stop()
            else:
                return True
        self._log("Job activity changed", key, "started" if active else "stopped", next_fire=job.timer.next_fire)
        return True

    def stop_all(self) -> int:
        with self._lock:
            jobs = list(self._jobs.values())
            for job in jobs:
                job.timer.stop()
            self._jobs.clear()
        if jobs:
            logger.info("Stopped and cleared %s job(s)", len(jobs))
            if self.events is not None:
                self.events.info(SCHEDULER_SUBJECT, "Stopped all jobs", {"count": len(jobs)})
        return len(jobs)

    def get(self, script_id: str, cron_expr: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(self._key(script_id, cron_expr))

    def keys(self) -> List[JobKey]:
        with self._lock:
            return sorted(self._jobs)

    def active_keys(self) -> List[JobKey]:
        with self._lock:
            return sorted(key for key, job in self._jobs.items() if job.timer.active)

    def jobs_for(self, script_id: str) -> List[Job]:
        with self._lock:
            return [job for key, job in sorted(self._jobs.items()) if key[0] == script_id]

    def fire_due(self, now: Optional[datetime] = None) -> List[JobKey]:
        """Launch every active job whose next fire time has passed."""
        now = now or self._clock()
        due: List[Job] = []
        with self._lock:
            for job in self._jobs.values():
                if job.timer.is_due(now):
                    job.timer.advance(now)
                    job.fire_count += 1
                    due.append(job)
        for job in due:
            logger.info("Firing job %s", format_key(job.key))
            self._spawner(f"foreman-job-{format_key(job.key)}", self._guarded(job))
        return [job.key for job in due]

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 1.0) -> None:
        logger.info("Dispatch loop started with %s job(s), poll_seconds=%s", len(self.keys()), poll_seconds)
        while not stop_event.is_set():
            try:
                self.fire_due()
            except Exception as exc:  # pragma: no cover
                logger.exception("Dispatch loop error: %s", exc)
            stop_event.wait(poll_seconds)
        logger.info("Dispatch loop stopped.")

    def _guarded(self, job: Job) -> FireCallback:
        def run() -> None:
            try:
                job.on_fire()
            except Exception as exc:
                logger.exception("Job %s raised: %s", format_key(job.key), exc)
                if self.events is not None:
                    self.events.error(
                        SCHEDULER_SUBJECT,
                        "Job firing raised an error",
                        {"scriptId": job.script_id, "schedule": job.cron_expr, "error": str(exc)},
                    )

        return run

    def _key(self, script_id: str, cron_expr: str) -> JobKey:
        return (script_id, " ".join(cron_expr.split()))

    def _log(self, message: str, key: JobKey, outcome: str, next_fire: Optional[datetime] = None) -> None:
        next_text = next_fire.isoformat() if next_fire else None
        logger.info("%s %s: %s (next_fire=%s)", message, format_key(key), outcome, next_text)
        if self.events is not None:
            self.events.info(
                SCHEDULER_SUBJECT,
                message,
                {"scriptId": key[0], "schedule": key[1], "jobStatus": outcome, "nextFire": next_text},
            )
