"""Tests for the bounded concurrency executor."""

from __future__ import annotations

import asyncio

import pytest

from shelfhome.services.concurrency import BoundedExecutor, TaskResult


def test_never_exceeds_max_concurrency() -> None:
    async def runner() -> None:
        executor = BoundedExecutor(3)
        active = 0
        peak = 0

        async def job(value: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return value * 2

        results = await executor.run(
            [lambda value=value: job(value) for value in range(10)]
        )

        assert peak == 3
        assert [result.unwrap() for result in results] == [
            value * 2 for value in range(10)
        ]

    asyncio.run(runner())


def test_results_keep_submission_order() -> None:
    async def runner() -> None:
        executor = BoundedExecutor(4)

        async def job(value: int, delay: float) -> int:
            await asyncio.sleep(delay)
            return value

        delays = [0.04, 0.0, 0.02, 0.01]
        results = await executor.run(
            [
                lambda value=value, delay=delay: job(value, delay)
                for value, delay in enumerate(delays)
            ]
        )

        assert [result.value for result in results] == [0, 1, 2, 3]

    asyncio.run(runner())


def test_failures_are_isolated() -> None:
    async def runner() -> None:
        executor = BoundedExecutor(2)

        async def ok() -> str:
            await asyncio.sleep(0)
            return "ok"

        async def boom() -> str:
            raise RuntimeError("boom")

        results = await executor.run([ok, boom, ok])

        assert [result.ok for result in results] == [True, False, True]
        assert isinstance(results[1].error, RuntimeError)
        with pytest.raises(RuntimeError, match="boom"):
            results[1].unwrap()

    asyncio.run(runner())


def test_tasks_are_not_started_before_admission() -> None:
    async def runner() -> None:
        executor = BoundedExecutor(1)
        started: list[int] = []
        release = asyncio.Event()

        async def job(value: int) -> int:
            started.append(value)
            await release.wait()
            return value

        run = asyncio.create_task(
            executor.run([lambda value=value: job(value) for value in range(3)])
        )
        await asyncio.sleep(0.01)
        assert started == [0]

        release.set()
        results = await run
        assert started == [0, 1, 2]
        assert [result.value for result in results] == [0, 1, 2]

    asyncio.run(runner())


def test_empty_run_and_invalid_limit() -> None:
    assert asyncio.run(BoundedExecutor(1).run([])) == []
    with pytest.raises(ValueError):
        BoundedExecutor(0)


def test_task_result_unwrap_returns_value() -> None:
    assert TaskResult(value=5).unwrap() == 5
