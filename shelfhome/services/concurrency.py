"""Capped-parallelism execution with per-task failure isolation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Task = Callable[[], Awaitable[T]]


@dataclass(slots=True)
class TaskResult(Generic[T]):
    """Outcome of one task: either a value or the exception it raised."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class BoundedExecutor:
    """Run awaitable factories with at most ``max_concurrency`` in flight.

    Tasks are zero-argument callables so that nothing starts before it is
    admitted. Results come back in submission order. An exception raised by a
    task lands in its own :class:`TaskResult` and never affects its siblings;
    cancelling the caller cancels the whole run.
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be a positive integer")
        self._max_concurrency = max_concurrency

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def run(self, tasks: Sequence[Task[T]]) -> list[TaskResult[T]]:
        if not tasks:
            return []
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _admit(index: int, task: Task[T]) -> TaskResult[T]:
            async with semaphore:
                try:
                    return TaskResult(value=await task())
                except Exception as exc:
                    logger.debug("Task %s failed: %s", index, exc)
                    return TaskResult(error=exc)

        return list(
            await asyncio.gather(
                *(_admit(index, task) for index, task in enumerate(tasks))
            )
        )
