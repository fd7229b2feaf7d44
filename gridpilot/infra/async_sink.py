"""
Best-effort async sink for side effects that must never block a tick.

Alert sends, equity appends and throttle flushes are queued here as
coroutine factories. A single worker runs them in order; failures are
logged and dropped. When the queue is full, new work is dropped and
counted rather than awaited.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

JobFactory = Callable[[], Awaitable[object]]


class BestEffortSink:
    def __init__(self, maxsize: int = 256, name: str = "sink") -> None:
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0
        self.failed = 0
        self.completed = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"{self.name}-worker")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(self, factory: JobFactory, label: str = "") -> bool:
        """Queue a job. Returns False (and counts a drop) when the queue is full."""
        if not self.running:
            self.start()
        try:
            self._queue.put_nowait((factory, label))
        except asyncio.QueueFull:
            self.dropped += 1
            log_event(log, "sink_dropped", level=logging.WARNING, sink=self.name, label=label, dropped=self.dropped)
            return False
        return True

    async def _run(self) -> None:
        while True:
            factory, label = await self._queue.get()
            try:
                await factory()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.failed += 1
                log_event(log, "sink_job_failed", level=logging.WARNING, sink=self.name, label=label, err=str(exc))
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float = 5.0) -> bool:
        """Wait for queued jobs to finish. Returns False on timeout."""
        if not self.running:
            return self._queue.empty()
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        await self.drain(timeout)
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
