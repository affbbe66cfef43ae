"""Recurring-job scheduler, decoupled from the sweep logic it runs.

Schedules are computed in the care-site timezone. ``trigger_now`` runs a
registered job immediately whether or not the loops are started.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Any, Protocol

from ridekeeper.models import utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = ["AsyncioScheduler", "DailyAt", "Every", "ScheduleSpec"]

logger = logging.getLogger(__name__)


class ScheduleSpec(Protocol):
    def next_run(self, after: datetime) -> datetime: ...


@dataclass(frozen=True)
class Every:
    """Every ``interval``, aligned to local midnight, within [start_hour, end_hour]."""

    interval: timedelta
    start_hour: int = 0
    end_hour: int = 23  # inclusive
    tz: tzinfo = UTC

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise ValueError("interval must be positive")
        if not 0 <= self.start_hour <= self.end_hour <= 23:
            raise ValueError("hours must satisfy 0 <= start_hour <= end_hour <= 23")

    def next_run(self, after: datetime) -> datetime:
        local = after.astimezone(self.tz)
        first = local.replace(hour=self.start_hour, minute=0, second=0, microsecond=0)
        if local < first:
            return first
        candidate = first + ((local - first) // self.interval + 1) * self.interval
        if candidate.date() == first.date() and candidate.hour <= self.end_hour:
            return candidate
        return first + timedelta(days=1)


@dataclass(frozen=True)
class DailyAt:
    hour: int
    minute: int = 0
    tz: tzinfo = UTC

    def next_run(self, after: datetime) -> datetime:
        local = after.astimezone(self.tz)
        candidate = local.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        return candidate


@dataclass
class _Job:
    name: str
    spec: ScheduleSpec
    task: Callable[[], Awaitable[Any]]
    next_run: datetime | None = None
    runs: int = 0
    failures: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class AsyncioScheduler:
    """One asyncio task per registered job; jobs never overlap themselves."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, _Job] = {}
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def register_recurring(
        self, name: str, spec: ScheduleSpec, task: Callable[[], Awaitable[Any]]
    ) -> None:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        self._jobs[name] = _Job(name=name, spec=spec, task=task)

    async def trigger_now(self, name: str) -> Any:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return await self._run(job)

    def jobs(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            {
                "name": job.name,
                "next_run": (job.next_run or job.spec.next_run(now)).isoformat(),
                "runs": job.runs,
                "failures": job.failures,
            }
            for job in self._jobs.values()
        ]

    def start(self) -> None:
        if self._tasks:
            return
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("Scheduler started with %d jobs", len(self._tasks))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Scheduler stopped")

    async def _loop(self, job: _Job) -> None:
        while True:
            now = self._clock()
            job.next_run = job.spec.next_run(now)
            await self._sleep(max((job.next_run - now).total_seconds(), 0.0))
            try:
                await self._run(job)
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)

    async def _run(self, job: _Job) -> Any:
        async with job.lock:
            job.runs += 1
            try:
                return await job.task()
            except Exception:
                job.failures += 1
                raise
