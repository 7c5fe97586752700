from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_MARGIN_RATIO = 0.1


@dataclass(slots=True)
class SupervisedResult(Generic[T]):
    value: T | None
    deadline_exceeded: bool
    elapsed_seconds: float


class TimeoutSupervisor:
    """Races work against a deadline kept strictly below the host ceiling."""

    def __init__(
        self,
        host_limit_seconds: float,
        safety_margin_seconds: float,
        *,
        allow_background: bool = False,
    ) -> None:
        if host_limit_seconds <= 0:
            raise ValueError("host_limit_seconds must be positive")
        self.host_limit_seconds = host_limit_seconds
        self.safety_margin_seconds = min(
            max(safety_margin_seconds, host_limit_seconds * MIN_MARGIN_RATIO),
            host_limit_seconds * 0.9,
        )
        self.allow_background = allow_background
        self._background: set[asyncio.Task] = set()

    @property
    def deadline_seconds(self) -> float:
        return self.host_limit_seconds - self.safety_margin_seconds

    async def run(self, work: Awaitable[T]) -> SupervisedResult[T]:
        started = time.monotonic()
        task = asyncio.ensure_future(work)
        done, _ = await asyncio.wait({task}, timeout=self.deadline_seconds)
        elapsed = time.monotonic() - started

        if task in done:
            return SupervisedResult(value=task.result(), deadline_exceeded=False, elapsed_seconds=elapsed)

        if self.allow_background:
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
            logger.warning(
                "deadline %.2fs exceeded; work continues in background",
                self.deadline_seconds,
            )
        else:
            task.cancel()
            logger.warning(
                "deadline %.2fs exceeded; work abandoned for orphan recovery",
                self.deadline_seconds,
            )
        return SupervisedResult(value=None, deadline_exceeded=True, elapsed_seconds=elapsed)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background work; hosts that keep running after the response call this."""

        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background work failed after deadline", exc_info=exc)
