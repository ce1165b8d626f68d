"""
Deduplicating work queue driving a reconciler.

A key is processed by at most one worker at a time. Adding a key that is
already waiting is a no-op; adding a key that is being processed marks it
dirty so it runs exactly once more after the current attempt finishes.
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set

from policyguard.core import metrics
from policyguard.core.logging import get_logger, log_event
from policyguard.models.resources import ReconcileResult

logger = get_logger(__name__)

Reconcile = Callable[[Hashable], ReconcileResult]


class WorkQueue:
    """Runs ``reconcile`` for queued keys on a bounded set of workers."""

    def __init__(
        self,
        name: str,
        reconcile: Reconcile,
        workers: int = 1,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
    ):
        self.name = name
        self.reconcile = reconcile
        self.workers = workers
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._timers: Set[asyncio.TimerHandle] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Queue operations (event loop thread only)
    # ------------------------------------------------------------------

    def add(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        metrics.queue_depth.labels(controller=self.name).set(len(self._queue))
        self._notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return

        def fire():
            self._timers.discard(timer)
            self.add(key)

        timer = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(timer)

    def add_rate_limited(self, key: Hashable) -> None:
        self.add_after(key, self.backoff(key))

    def backoff(self, key: Hashable) -> float:
        """Next exponential delay for ``key``; each call counts as a failure."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def __len__(self):
        return len(self._queue)

    async def _get(self) -> Optional[Hashable]:
        wakeup = self._event()
        while not self._queue and not self._shutting_down:
            wakeup.clear()
            await wakeup.wait()
        if self._shutting_down:
            return None
        key = self._queue.popleft()
        metrics.queue_depth.labels(controller=self.name).set(len(self._queue))
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def _done(self, key: Hashable) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._notify()

    def _event(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def _notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the workers and wait until the queue is shut down."""
        self._event()
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"Started {self.workers} workers for {self.name}")
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._notify()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(f"Stopped workers for {self.name}")

    async def _worker(self) -> None:
        while True:
            key = await self._get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self._done(key)

    async def process(self, key: Hashable) -> None:
        """Run one reconcile attempt for ``key`` and schedule its follow-up."""
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(self.reconcile, key)
        except Exception as e:
            metrics.reconcile_total.labels(controller=self.name, result="error").inc()
            metrics.requeue_total.labels(controller=self.name, reason="error").inc()
            log_event(
                logger,
                "error",
                "reconcile_failed",
                controller=self.name,
                key=str(key),
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=time.monotonic() - start,
            )
            self.add_rate_limited(key)
            return

        metrics.reconcile_total.labels(controller=self.name, result="success").inc()
        if result.requeue_after > 0:
            metrics.requeue_total.labels(controller=self.name, reason="delay").inc()
            self.forget(key)
            self.add_after(key, result.requeue_after)
        elif result.requeue:
            metrics.requeue_total.labels(controller=self.name, reason="requeue").inc()
            self.add_rate_limited(key)
        else:
            self.forget(key)

        log_event(
            logger,
            "debug",
            "reconcile_completed",
            controller=self.name,
            key=str(key),
            requeue=result.requeue,
            requeue_after=result.requeue_after,
            duration_seconds=time.monotonic() - start,
        )
