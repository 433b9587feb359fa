"""Unit tests for the periodic task scheduler."""

import asyncio

import pytest

from src.relay.scheduler import PeriodicScheduler


class TestRegistration:
    """Test task registration."""

    def test_add(self) -> None:
        """Test a task is registered with zeroed counters."""
        scheduler = PeriodicScheduler()

        async def job() -> None:
            pass

        scheduler.add("job", 10.0, job)

        task = scheduler.get("job")
        assert scheduler.task_names == ["job"]
        assert task.interval_s == 10.0
        assert task.run_count == 0
        assert not task.is_running

    def test_duplicate_name(self) -> None:
        """Test a name can only be registered once."""
        scheduler = PeriodicScheduler()

        async def job() -> None:
            pass

        scheduler.add("job", 1.0, job)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.add("job", 2.0, job)

    def test_non_positive_interval(self) -> None:
        """Test the period must be positive."""
        scheduler = PeriodicScheduler()

        async def job() -> None:
            pass

        with pytest.raises(ValueError, match="positive"):
            scheduler.add("job", 0, job)


class TestExecution:
    """Test running tasks."""

    @pytest.mark.asyncio
    async def test_trigger(self) -> None:
        """Test trigger runs the task once."""
        scheduler = PeriodicScheduler()
        calls: list[int] = []

        async def job() -> None:
            calls.append(1)

        scheduler.add("job", 60.0, job)

        assert await scheduler.trigger("job")
        assert calls == [1]
        assert scheduler.get("job").run_count == 1
        assert scheduler.get("job").last_duration_s is not None

    @pytest.mark.asyncio
    async def test_no_overlap(self) -> None:
        """Test a firing is skipped while the previous one is still running."""
        scheduler = PeriodicScheduler()
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_job() -> None:
            started.set()
            await release.wait()

        scheduler.add("slow", 60.0, slow_job)

        first = asyncio.create_task(scheduler.trigger("slow"))
        await started.wait()

        assert scheduler.get("slow").is_running
        assert not await scheduler.trigger("slow")
        assert scheduler.get("slow").skipped_count == 1

        release.set()
        assert await first
        assert scheduler.get("slow").run_count == 1
        assert not scheduler.get("slow").is_running

    @pytest.mark.asyncio
    async def test_error_does_not_stop_task(self) -> None:
        """Test an exception is logged and the task keeps running."""
        scheduler = PeriodicScheduler()
        calls: list[int] = []

        async def flaky() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        scheduler.add("flaky", 60.0, flaky)

        assert await scheduler.trigger("flaky")
        assert await scheduler.trigger("flaky")

        task = scheduler.get("flaky")
        assert task.error_count == 1
        assert task.run_count == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_periodic_loop(self) -> None:
        """Test started tasks fire repeatedly until stopped."""
        scheduler = PeriodicScheduler()
        fired = asyncio.Event()
        calls: list[int] = []

        async def job() -> None:
            calls.append(1)
            if len(calls) >= 3:
                fired.set()

        scheduler.add("job", 0.01, job)
        scheduler.start()
        assert scheduler.is_running

        await asyncio.wait_for(fired.wait(), timeout=2.0)
        await scheduler.stop()

        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_periodic_loop_survives_errors(self) -> None:
        """Test a failing task is rescheduled."""
        scheduler = PeriodicScheduler()
        fired = asyncio.Event()
        calls: list[int] = []

        async def failing() -> None:
            calls.append(1)
            if len(calls) >= 2:
                fired.set()
            raise RuntimeError("always fails")

        scheduler.add("failing", 0.01, failing)
        scheduler.start()

        await asyncio.wait_for(fired.wait(), timeout=2.0)
        await scheduler.stop()

        assert scheduler.get("failing").error_count >= 2

    @pytest.mark.asyncio
    async def test_double_start(self) -> None:
        """Test starting twice is rejected."""
        scheduler = PeriodicScheduler()

        async def job() -> None:
            pass

        scheduler.add("job", 60.0, job)
        scheduler.start()

        with pytest.raises(RuntimeError, match="already running"):
            scheduler.start()

        await scheduler.stop()
