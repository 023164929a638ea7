"""Bounded async queue that hands stored events to the alert evaluator.

Events are sharded to workers by tenant, so each tenant's events are
evaluated one at a time in the order they were persisted. Ingestion waits a
bounded time for room on a full shard; past that the event is dropped, logged
at error and counted in the stats.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, Mapping, Optional

from logward.config import settings

logger = logging.getLogger(__name__)


class EvaluationQueue:
    """Worker pool with one bounded queue per worker."""

    def __init__(
        self,
        evaluator=None,
        workers: int | None = None,
        max_backlog: int | None = None,
        drain_timeout: float | None = None,
        sweep_interval: float | None = None,
        put_timeout: float | None = None,
    ):
        self._evaluator = evaluator
        self._num_workers = max(1, settings.ALERT_QUEUE_WORKERS if workers is None else workers)
        self._max_backlog = settings.ALERT_QUEUE_MAX_BACKLOG if max_backlog is None else max_backlog
        self._drain_timeout = (
            settings.ALERT_QUEUE_DRAIN_TIMEOUT_SECONDS if drain_timeout is None else drain_timeout
        )
        self._sweep_interval = (
            settings.ALERT_STATE_SWEEP_SECONDS if sweep_interval is None else sweep_interval
        )
        self._put_timeout = (
            settings.ALERT_QUEUE_PUT_TIMEOUT_SECONDS if put_timeout is None else put_timeout
        )
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []
        self._gc_task: asyncio.Task | None = None
        self._started = False
        self._submitted = 0
        self._processed = 0
        self._failed = 0
        self._dropped = 0

    @property
    def evaluator(self):
        if self._evaluator is None:
            from logward.services.alerting import alert_evaluator
            self._evaluator = alert_evaluator
        return self._evaluator

    @property
    def is_running(self) -> bool:
        return self._started

    def _ensure_queues(self) -> None:
        if not self._queues:
            self._queues = [asyncio.Queue(maxsize=self._max_backlog) for _ in range(self._num_workers)]

    def shard_for(self, tenant_id: str) -> int:
        return zlib.crc32(str(tenant_id).encode("utf-8")) % self._num_workers

    def submit(self, event: Mapping[str, Any]) -> bool:
        """Queue an event for evaluation without waiting.

        Returns False (and counts a drop) when the tenant's shard is full.
        """
        self._ensure_queues()
        shard = self.shard_for(event.get("tenant_id", ""))
        try:
            self._queues[shard].put_nowait(event)
        except asyncio.QueueFull:
            self._record_drop(shard, event)
            return False
        self._submitted += 1
        return True

    async def put(self, event: Mapping[str, Any], timeout: Optional[float] = None) -> bool:
        """Queue an event, waiting up to ``timeout`` seconds for room on its shard.

        Returns False (and counts a drop) when the shard stays full.
        """
        self._ensure_queues()
        shard = self.shard_for(event.get("tenant_id", ""))
        queue = self._queues[shard]
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            wait = self._put_timeout if timeout is None else timeout
            try:
                await asyncio.wait_for(queue.put(event), timeout=wait)
            except asyncio.TimeoutError:
                self._record_drop(shard, event)
                return False
        self._submitted += 1
        return True

    def _record_drop(self, shard: int, event: Mapping[str, Any]) -> None:
        self._dropped += 1
        logger.error(
            f"Evaluation backlog full on shard {shard} ({self._max_backlog}); "
            f"event {event.get('id')} for tenant {event.get('tenant_id')} will not be evaluated "
            f"({self._dropped} dropped so far)"
        )

    async def start(self):
        if self._started:
            return
        self._ensure_queues()
        self._started = True
        for i in range(self._num_workers):
            self._workers.append(asyncio.create_task(self._worker(i)))
        if not self._gc_task or self._gc_task.done():
            self._gc_task = asyncio.create_task(self._gc_loop())
        logger.info(f"Evaluation queue started with {self._num_workers} workers")

    async def stop(self, drain: bool = True):
        if drain and self._started:
            await self.join(timeout=self._drain_timeout)
        self._started = False
        for w in self._workers:
            w.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._gc_task:
            self._gc_task.cancel()
            await asyncio.gather(self._gc_task, return_exceptions=True)
            self._gc_task = None
        logger.info("Evaluation queue stopped")

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event is evaluated; False on timeout."""
        if not self._queues:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(q.join() for q in self._queues)), timeout=timeout
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Evaluation queue drain timed out after {timeout}s with {self.backlog} events pending"
            )
            return False

    @property
    def backlog(self) -> int:
        return sum(q.qsize() for q in self._queues)

    def get_stats(self) -> dict:
        return {
            "running": self._started,
            "workers": self._num_workers,
            "backlog": self.backlog,
            "max_backlog": self._max_backlog,
            "submitted": self._submitted,
            "processed": self._processed,
            "failed": self._failed,
            "dropped": self._dropped,
            "window_states": len(self.evaluator.state_store),
        }

    async def _worker(self, worker_id: int):
        queue = self._queues[worker_id]
        logger.debug(f"Evaluation worker {worker_id} started")
        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.evaluator.evaluate(event)
                self._processed += 1
            except asyncio.CancelledError:
                queue.task_done()
                raise
            except Exception as e:
                self._failed += 1
                logger.error(f"Worker {worker_id}: evaluation failed for event {event.get('id')}: {e}", exc_info=True)
            queue.task_done()

    async def _gc_loop(self):
        interval = max(1.0, float(self._sweep_interval))
        while self._started:
            try:
                self.evaluator.state_store.sweep()
            except Exception as e:
                logger.warning(f"Alert window sweep error: {e}")
            await asyncio.sleep(interval)


# Singleton
evaluation_queue = EvaluationQueue()
