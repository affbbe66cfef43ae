"""Tests for schedule specs and the asyncio scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import pytest

from ridekeeper.orchestration.scheduler import AsyncioScheduler, DailyAt, Every

if TYPE_CHECKING:
    from tests.conftest import FakeClock

LA = ZoneInfo("America/Los_Angeles")


def _local(hour: int, minute: int = 0, day: int = 16) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=LA)


class TestEvery:
    def test_hourly_window(self) -> None:
        spec = Every(timedelta(hours=1), start_hour=8, end_hour=20, tz=LA)
        assert spec.next_run(_local(7, 15)) == _local(8)
        assert spec.next_run(_local(10)) == _local(11)
        assert spec.next_run(_local(10, 59)) == _local(11)
        assert spec.next_run(_local(20)) == _local(8, day=17)

    def test_half_hourly_all_day(self) -> None:
        spec = Every(timedelta(minutes=30), tz=LA)
        assert spec.next_run(_local(10, 10)) == _local(10, 30)
        assert spec.next_run(_local(23, 45)) == _local(0, day=17)

    def test_accepts_utc_input(self) -> None:
        spec = Every(timedelta(minutes=5), tz=LA)
        after = _local(9, 2).astimezone(ZoneInfo("UTC"))
        assert spec.next_run(after) == _local(9, 5)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"interval": timedelta(0)},
            {"interval": timedelta(hours=1), "start_hour": 10, "end_hour": 8},
            {"interval": timedelta(hours=1), "end_hour": 24},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            Every(**kwargs)


class TestDailyAt:
    def test_later_today(self) -> None:
        assert DailyAt(20, tz=LA).next_run(_local(10)) == _local(20)

    def test_tomorrow_once_passed(self) -> None:
        assert DailyAt(6, tz=LA).next_run(_local(10)) == _local(6, day=17)
        assert DailyAt(6, tz=LA).next_run(_local(6)) == _local(6, day=17)


class TestAsyncioScheduler:
    @pytest.mark.anyio()
    async def test_trigger_now_runs_and_counts(self, clock: FakeClock) -> None:
        scheduler = AsyncioScheduler(clock=clock)
        calls: list[str] = []

        async def task() -> str:
            calls.append("ran")
            return "report"

        scheduler.register_recurring("scoring", DailyAt(6, tz=LA), task)
        assert await scheduler.trigger_now("scoring") == "report"
        assert calls == ["ran"]

        (job,) = scheduler.jobs()
        assert job["name"] == "scoring"
        assert job["runs"] == 1
        assert job["failures"] == 0
        assert job["next_run"] == _local(6, day=17).isoformat()

    @pytest.mark.anyio()
    async def test_failures_propagate_and_count(self, clock: FakeClock) -> None:
        scheduler = AsyncioScheduler(clock=clock)

        async def broken() -> None:
            raise RuntimeError("boom")

        scheduler.register_recurring("offers", Every(timedelta(hours=1)), broken)
        with pytest.raises(RuntimeError, match="boom"):
            await scheduler.trigger_now("offers")
        assert scheduler.jobs()[0]["failures"] == 1

    def test_duplicate_registration(self, clock: FakeClock) -> None:
        scheduler = AsyncioScheduler(clock=clock)

        async def task() -> None:
            return None

        scheduler.register_recurring("x", Every(timedelta(hours=1)), task)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.register_recurring("x", Every(timedelta(hours=1)), task)

    @pytest.mark.anyio()
    async def test_unknown_job(self, clock: FakeClock) -> None:
        with pytest.raises(KeyError):
            await AsyncioScheduler(clock=clock).trigger_now("nope")

    @pytest.mark.anyio()
    async def test_loop_sleeps_until_next_run_then_runs(self, clock: FakeClock) -> None:
        delays: list[float] = []
        blocked = asyncio.Event()

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)
            if len(delays) > 1:
                await blocked.wait()

        scheduler = AsyncioScheduler(clock=clock, sleep=fake_sleep)
        runs: list[int] = []

        async def task() -> None:
            runs.append(1)

        scheduler.register_recurring("status_sync", Every(timedelta(minutes=5), tz=LA), task)
        scheduler.start()
        assert scheduler.running

        for _ in range(10):
            if runs:
                break
            await asyncio.sleep(0)

        await scheduler.stop()
        assert not scheduler.running
        assert runs == [1]
        assert delays[0] == 300.0

    @pytest.mark.anyio()
    async def test_loop_survives_job_failure(self, clock: FakeClock) -> None:
        calls = 0
        blocked = asyncio.Event()

        async def fake_sleep(seconds: float) -> None:
            if calls >= 2:
                await blocked.wait()

        async def flaky() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("transient")

        scheduler = AsyncioScheduler(clock=clock, sleep=fake_sleep)
        scheduler.register_recurring("reminders", Every(timedelta(minutes=30)), flaky)
        scheduler.start()
        for _ in range(20):
            if calls >= 2:
                break
            await asyncio.sleep(0)
        await scheduler.stop()

        assert calls == 2
        assert scheduler.jobs()[0]["failures"] == 2
