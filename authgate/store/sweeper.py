"""Periodic reaping of expired sessions and authorization codes.

The sleep function is injected so tests drive the schedule without waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepJob:
    name: str
    interval_seconds: float
    sweep: Callable[[], int]


class Sweeper:
    def __init__(
        self,
        jobs: list[SweepJob],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.jobs = jobs
        self._sleep = sleep
        self._tasks: list[asyncio.Task] = []

    def run_once(self) -> dict[str, int]:
        results = {}
        for job in self.jobs:
            results[job.name] = self._run_job(job)
        return results

    def _run_job(self, job: SweepJob) -> int:
        try:
            removed = job.sweep()
        except Exception:
            logger.exception("Sweep job %s failed", job.name)
            return 0
        if removed:
            logger.info("Sweep %s removed %d expired entries", job.name, removed)
        return removed

    async def _loop(self, job: SweepJob) -> None:
        while True:
            await self._sleep(job.interval_seconds)
            self._run_job(job)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(job), name=f"sweep-{job.name}") for job in self.jobs
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return bool(self._tasks)
