"""Tests for the background task runner."""

from __future__ import annotations

import asyncio

import pytest

from insurance_verifier.core.tasks import TaskRunner


class TestTaskRunner:
    @pytest.mark.asyncio
    async def test_runs_and_drains(self) -> None:
        runner = TaskRunner(max_concurrency=2)
        seen: list[int] = []

        async def job(n: int) -> int:
            await asyncio.sleep(0)
            seen.append(n)
            return n

        tasks = [runner.submit(f"job-{n}", job, n) for n in range(5)]
        assert runner.pending == 5
        await runner.drain()

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert [t.result() for t in tasks] == [0, 1, 2, 3, 4]
        assert runner.pending == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        runner = TaskRunner(max_concurrency=2)
        running = 0
        peak = 0

        async def job() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for n in range(6):
            runner.submit(f"job-{n}", job)
        await runner.drain()
        assert peak == 2

    @pytest.mark.asyncio
    async def test_failed_job_is_contained(self) -> None:
        runner = TaskRunner()

        async def boom() -> None:
            raise RuntimeError("boom")

        task = runner.submit("boom", boom)
        await runner.drain()
        assert task.result() is None

    @pytest.mark.asyncio
    async def test_jobs_queued_while_draining(self) -> None:
        runner = TaskRunner()
        done: list[str] = []

        async def second() -> None:
            done.append("second")

        async def first() -> None:
            runner.submit("second", second)
            done.append("first")

        runner.submit("first", first)
        await runner.drain()
        assert done == ["first", "second"]

    @pytest.mark.asyncio
    async def test_shutdown_rejects_new_jobs(self) -> None:
        runner = TaskRunner()

        async def slow() -> None:
            await asyncio.sleep(10)

        task = runner.submit("slow", slow)
        await runner.shutdown(timeout=0.05)

        assert task.cancelled()
        with pytest.raises(RuntimeError, match="shut down"):
            runner.submit("late", slow)
