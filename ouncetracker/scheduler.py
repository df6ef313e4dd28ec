"""Interval jobs that run alongside the scrape loop."""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)

JobHandler = Callable[[], Any]


@dataclass
class ScheduledJob:
    name: str
    interval_ms: int
    handler: JobHandler
    is_running: bool = False
    last_run: datetime | None = None
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_error: str | None = field(default=None, repr=False)


class BackgroundJobScheduler:
    """Named interval jobs on an APScheduler ``AsyncIOScheduler``.

    A firing that arrives while the previous run of the same job is still in
    flight is skipped, never queued. Job failures are logged and do not
    affect other jobs.
    """

    def __init__(self, *, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._jobs: dict[str, ScheduledJob] = {}
        self._timers: dict[str, Any] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def schedule_job(self, name: str, interval_ms: int, handler: JobHandler) -> bool:
        if name in self._jobs:
            LOGGER.warning("Job already scheduled; ignoring duplicate | job=%s", name)
            return False
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        job = ScheduledJob(name=name, interval_ms=interval_ms, handler=handler)
        self._jobs[name] = job
        LOGGER.info("Job scheduled | job=%s | interval_ms=%d", name, interval_ms)
        if self._started:
            self._add_timer(job)
        return True

    def _add_timer(self, job: ScheduledJob) -> None:
        self._timers[job.name] = self._scheduler.add_job(
            self.run_job,
            "interval",
            seconds=job.interval_ms / 1000,
            args=[job],
            id=job.name,
            name=job.name,
            replace_existing=True,
            # overlap is handled by run_job so skipped firings get logged
            max_instances=2,
            coalesce=True,
            misfire_grace_time=None,
        )

    def _remove_timer(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is None:
            return
        try:
            timer.remove()
        except Exception as exc:
            LOGGER.debug("Timer already removed | job=%s | error=%s", name, exc)

    def start(self) -> None:
        if self._started:
            LOGGER.warning("Scheduler already started")
            return
        if not self._scheduler.running:
            self._scheduler.start()
        else:
            self._scheduler.resume()
        for job in self._jobs.values():
            self._add_timer(job)
        self._started = True
        LOGGER.info("Scheduler started | jobs=%d", len(self._jobs))

    def stop(self) -> None:
        if not self._started:
            return
        for name in list(self._timers):
            self._remove_timer(name)
        self._scheduler.pause()
        self._started = False
        LOGGER.info("Scheduler stopped")

    def shutdown(self) -> None:
        self.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def run_job(self, job: ScheduledJob) -> bool:
        """Run *job* once unless it is already running; returns True when it succeeded."""

        if job.is_running:
            job.skipped += 1
            LOGGER.warning("Job still running; skipping this firing | job=%s", job.name)
            return False

        job.is_running = True
        started = time.monotonic()
        try:
            result = job.handler()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            job.failures += 1
            job.last_error = str(exc)
            LOGGER.error(
                "Job failed | job=%s | duration=%.2fs | error=%s",
                job.name,
                time.monotonic() - started,
                exc,
            )
            return False
        finally:
            job.is_running = False
            job.runs += 1

        job.last_run = datetime.now(timezone.utc)
        LOGGER.info("Job completed | job=%s | duration=%.2fs", job.name, time.monotonic() - started)
        return True

    def get_job(self, name: str) -> ScheduledJob | None:
        return self._jobs.get(name)

    def jobs(self) -> tuple[ScheduledJob, ...]:
        return tuple(self._jobs.values())

    def active_timer_count(self, name: str | None = None) -> int:
        if name is not None:
            return 1 if name in self._timers else 0
        return len(self._timers)
