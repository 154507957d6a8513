"""Minimal asyncio job scheduler for periodic incident maintenance."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger()

JobFunc = Callable[..., Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A job that runs every ``interval_seconds`` until the scheduler stops."""

    name: str
    func: JobFunc
    interval_seconds: int
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    last_run: datetime | None = None
    run_count: int = 0
    error_count: int = 0
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "running": self._task is not None and not self._task.done(),
        }


class JobScheduler:
    """Runs registered coroutines on fixed intervals.

    A failing job is logged and counted, then retried on its next interval.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        func: JobFunc,
        interval_seconds: int,
        enabled: bool = True,
        **kwargs: Any,
    ) -> None:
        """Register *func*; a job with the same name is replaced."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._jobs[name] = ScheduledJob(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            kwargs=kwargs,
            enabled=enabled,
        )
        logger.info("scheduler.job_added", job=name, interval_seconds=interval_seconds)

    def remove_job(self, name: str) -> bool:
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        if job._task is not None:
            job._task.cancel()
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            if job.enabled:
                job._task = asyncio.create_task(self._run_loop(job), name=f"job-{job.name}")
        logger.info("scheduler.started", jobs=len(self._jobs))

    async def stop(self) -> None:
        self._running = False
        for job in self._jobs.values():
            task, job._task = job._task, None
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler.stopped")

    def list_jobs(self) -> list[dict[str, Any]]:
        return [job.status() for job in self._jobs.values()]

    def get_job(self, name: str) -> dict[str, Any] | None:
        job = self._jobs.get(name)
        return job.status() if job else None

    async def _run_loop(self, job: ScheduledJob) -> None:
        while self._running:
            await asyncio.sleep(job.interval_seconds)
            try:
                await job.func(**job.kwargs)
            except Exception as e:
                job.error_count += 1
                logger.error("scheduler.job_failed", job=job.name, error=str(e))
                continue
            job.run_count += 1
            job.last_run = datetime.now(UTC)
