from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from esp_integration.domain.errors import OperationTimeout


T = TypeVar("T")


@dataclass
class TaskOutcome(Generic[T]):
    index: int
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    concurrency: int,
) -> list[TaskOutcome[T]]:
    """Run independent async tasks with at most `concurrency` in flight.

    Outcomes come back in input order. A task that raises is recorded as a
    failed outcome; its siblings keep running.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    outcomes: list[TaskOutcome[T]] = [TaskOutcome(index=i) for i in range(len(tasks))]
    next_index = 0

    async def _worker() -> None:
        nonlocal next_index
        while next_index < len(tasks):
            index = next_index
            next_index += 1
            try:
                outcomes[index].value = await tasks[index]()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                outcomes[index].error = exc

    workers = [_worker() for _ in range(min(concurrency, len(tasks)))]
    await asyncio.gather(*workers)
    return outcomes


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(f"Timeout after {seconds:g}s") from exc


def error_message(exc: BaseException | None, fallback: str = "Failed to fetch") -> str:
    if exc is None:
        return fallback
    return str(exc) or exc.__class__.__name__
