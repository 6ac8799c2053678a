"""
Per-Patient Event Queue — serialises inbound events for each sender.

One asyncio.Queue per sender address.  Events for the same sender are
processed FIFO, one at a time; different senders run in parallel, up to
``max_concurrency`` pipelines at once.  The total number of queued
events is capped at ``max_pending``; beyond that enqueue() raises
QueueFullError and the webhook asks the channel to redeliver later.

Idle queues are cleaned up after a configurable timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from mamaguard.gateway.errors import QueueFullError
from mamaguard.gateway.events import InboundEvent
from mamaguard.gateway.validators import format_for_whatsapp

logger = logging.getLogger("gateway.queue")

# Type for the callback the queue calls to process each event
EventProcessor = Callable[[InboundEvent], Awaitable[Any]]


class PatientQueueManager:
    """
    Usage:
        mgr = PatientQueueManager(processor=pipeline.process, max_pending=500)
        await mgr.start()
        mgr.enqueue(event)   # raises QueueFullError when saturated

    A worker task is spawned per sender on first event and torn down
    after idle_timeout_seconds of inactivity.
    """

    def __init__(
        self,
        processor: EventProcessor,
        max_pending: int = 500,
        max_concurrency: int = 8,
        idle_timeout_seconds: int = 1800,
    ) -> None:
        self._processor = processor
        self._max_pending = max_pending
        self._idle_timeout = idle_timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)

        self._queues: dict[str, asyncio.Queue[InboundEvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._last_activity: dict[str, datetime] = {}
        self._busy: set[str] = set()
        self._pending = 0
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    # ── Public API ──

    async def start(self) -> None:
        """Start the cleanup background loop."""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "PatientQueueManager started (max_pending=%d, idle timeout=%ds)",
            self._max_pending, self._idle_timeout,
        )

    async def stop(self) -> None:
        """Stop all workers.  Queued events that have not started are dropped."""
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        for key in list(self._workers.keys()):
            await self._destroy_queue(key)

        logger.info("PatientQueueManager stopped")

    def enqueue(self, event: InboundEvent) -> None:
        """Add an event to its sender's queue.  Creates the queue if needed."""
        if not self._running:
            raise QueueFullError("queue manager is not running")
        if self._pending >= self._max_pending:
            logger.warning(
                "Queue full (%d pending), rejecting %s", self._pending, event.provider_message_id
            )
            raise QueueFullError(f"{self._pending} events already pending")

        key = self.key_for(event.sender_address)
        if key not in self._queues:
            self._create_queue(key)

        self._last_activity[key] = datetime.now(timezone.utc)
        self._queues[key].put_nowait(event)
        self._pending += 1
        logger.debug("Enqueued %s for %s (depth=%d)",
                     event.provider_message_id, key, self._queues[key].qsize())

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        while self._pending > 0:
            await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    @staticmethod
    def key_for(address: str) -> str:
        return format_for_whatsapp(address) or address

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def active_count(self) -> int:
        return len(self._queues)

    @property
    def running(self) -> bool:
        return self._running

    def queue_depth(self, address: str) -> int:
        """Number of pending events for a sender.  Returns 0 if no queue."""
        q = self._queues.get(self.key_for(address))
        return q.qsize() if q else 0

    # ── Internal ──

    def _create_queue(self, key: str) -> None:
        q: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._queues[key] = q
        self._last_activity[key] = datetime.now(timezone.utc)
        self._workers[key] = asyncio.create_task(self._worker_loop(key))
        logger.debug("Created queue + worker for %s", key)

    async def _worker_loop(self, key: str) -> None:
        """Process events for a single sender, one at a time."""
        q = self._queues.get(key)
        if q is None:
            return

        while self._running or not q.empty():
            try:
                event = await asyncio.wait_for(q.get(), timeout=5.0)
            except asyncio.TimeoutError:
                if not self._running:
                    break
                continue

            try:
                self._last_activity[key] = datetime.now(timezone.utc)
                t0 = time.monotonic()
                self._busy.add(key)
                async with self._semaphore:
                    await self._processor(event)
                elapsed = time.monotonic() - t0
                logger.info("Event %s for %s processed in %.2fs",
                            event.provider_message_id, key, elapsed)
                if elapsed > 30:
                    logger.warning("Slow event: %s for %s took %.1fs",
                                   event.provider_message_id, key, elapsed)
            except Exception as exc:
                logger.error(
                    "Error processing %s for %s: %s",
                    event.provider_message_id, key, exc,
                    exc_info=True,
                )
            finally:
                self._busy.discard(key)
                self._pending -= 1
                q.task_done()

    async def _destroy_queue(self, key: str) -> None:
        # Unregister before awaiting the worker; an event enqueued meanwhile
        # gets a fresh queue and worker.
        q = self._queues.pop(key, None)
        worker = self._workers.pop(key, None)
        self._last_activity.pop(key, None)
        if q is not None:
            self._pending -= q.qsize()
        if worker and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.debug("Destroyed queue for %s", key)

    async def _cleanup_loop(self) -> None:
        """Periodically destroy idle queues."""
        while self._running:
            try:
                await asyncio.sleep(60)
                now = datetime.now(timezone.utc)
                idle = []
                for key, last in list(self._last_activity.items()):
                    q = self._queues.get(key)
                    expired = (now - last).total_seconds() > self._idle_timeout
                    if expired and (q is None or q.empty()) and key not in self._busy:
                        idle.append(key)

                for key in idle:
                    logger.info("Cleaning up idle queue for %s", key)
                    await self._destroy_queue(key)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)
