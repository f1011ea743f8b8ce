"""
Per-Sender Message Queue — serialises inbound messages for each phone.

One asyncio.Queue per sender.  Messages are processed FIFO, one at a
time, so a patient's conversation state is never updated by two
messages at once.  Different senders run in parallel.

``enqueue()`` returns a Future that resolves with the processor's
result (or its exception) so the webhook can answer only once the
message is committed.

Idle queues are cleaned up after a configurable timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from postop.gateway.events import InboundMessage
from postop.gateway.handlers.patient_resolver import digits_only

logger = logging.getLogger("gateway.queue")

# Type for the callback the queue calls to process each message
MessageProcessor = Callable[[InboundMessage], Awaitable[Any]]

QueueItem = tuple[InboundMessage, "asyncio.Future[Any]"]


def sender_key(message: InboundMessage) -> str:
    return digits_only(message.sender_phone) or message.sender_phone


class PatientQueueManager:
    """
    Manages one asyncio.Queue per sender phone.

    Usage:
        mgr = PatientQueueManager(processor=gateway.process_message)
        await mgr.start()
        result = await (await mgr.enqueue(message))

    A worker task is spawned for each sender on first message and torn
    down after idle_timeout_seconds of inactivity.
    """

    def __init__(
        self,
        processor: MessageProcessor,
        idle_timeout_seconds: int = 1800,  # 30 minutes
        cleanup_interval_seconds: float = 60,
    ) -> None:
        self._processor = processor
        self._idle_timeout = idle_timeout_seconds
        self._cleanup_interval = cleanup_interval_seconds

        self._queues: dict[str, asyncio.Queue[QueueItem]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._last_activity: dict[str, datetime] = {}
        self._busy: set[str] = set()
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    # ── Public API ──

    async def start(self) -> None:
        """Start the cleanup background loop."""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("PatientQueueManager started (idle timeout=%ds)", self._idle_timeout)

    async def stop(self) -> None:
        """Stop all workers.  Messages still queued get CancelledError."""
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

    async def enqueue(self, message: InboundMessage) -> asyncio.Future[Any]:
        """Add a message to its sender's queue.  Creates the queue if needed."""
        key = sender_key(message)
        worker = self._workers.get(key)
        if key not in self._queues or worker is None or worker.done():
            self._create_queue(key)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._last_activity[key] = datetime.now(timezone.utc)
        await self._queues[key].put((message, future))
        logger.debug(
            "Enqueued %s for sender %s (depth=%d)",
            message.message_id, key[-4:], self._queues[key].qsize(),
        )
        return future

    async def submit(self, message: InboundMessage) -> Any:
        """Enqueue and wait for the result."""
        future = await self.enqueue(message)
        return await future

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_senders(self) -> list[str]:
        return list(self._queues.keys())

    @property
    def active_count(self) -> int:
        return len(self._queues)

    def queue_depth(self, key: str) -> int:
        """Number of pending messages for a sender.  Returns 0 if no queue."""
        q = self._queues.get(key)
        return q.qsize() if q else 0

    # ── Internal ──

    def _create_queue(self, key: str) -> None:
        q: asyncio.Queue[QueueItem] = asyncio.Queue()
        self._queues[key] = q
        self._last_activity[key] = datetime.now(timezone.utc)
        self._workers[key] = asyncio.create_task(self._worker_loop(key, q))
        logger.debug("Created queue + worker for sender %s", key[-4:])

    async def _worker_loop(self, key: str, q: asyncio.Queue[QueueItem]) -> None:
        """Process messages for a single sender, one at a time."""
        while True:
            try:
                message, future = await q.get()
            except asyncio.CancelledError:
                self._cancel_pending(q)
                break

            self._busy.add(key)
            try:
                self._last_activity[key] = datetime.now(timezone.utc)
                t0 = time.monotonic()
                result = await self._processor(message)
                if not future.done():
                    future.set_result(result)
                elapsed = time.monotonic() - t0
                if elapsed > 30:
                    logger.warning(
                        "Slow message: %s for sender %s took %.1fs",
                        message.message_id, key[-4:], elapsed,
                    )
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                self._cancel_pending(q)
                raise
            except Exception as exc:
                logger.error(
                    "Error processing %s for sender %s: %s",
                    message.message_id, key[-4:], exc,
                )
                if not future.done():
                    future.set_exception(exc)
            finally:
                self._busy.discard(key)
                q.task_done()

    @staticmethod
    def _cancel_pending(q: asyncio.Queue[QueueItem]) -> None:
        while not q.empty():
            _, future = q.get_nowait()
            if not future.done():
                future.cancel()
            q.task_done()

    async def _destroy_queue(self, key: str) -> None:
        worker = self._workers.pop(key, None)
        if worker and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._queues.pop(key, None)
        self._last_activity.pop(key, None)
        logger.debug("Destroyed queue for sender %s", key[-4:])

    async def _cleanup_loop(self) -> None:
        """Periodically destroy idle queues."""
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.cleanup_idle()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)

    async def cleanup_idle(self) -> int:
        """Destroy queues idle longer than the timeout.  Returns how many."""
        now = datetime.now(timezone.utc)
        idle = []
        for key, last in list(self._last_activity.items()):
            q = self._queues.get(key)
            elapsed = (now - last).total_seconds()
            if (
                elapsed > self._idle_timeout
                and key not in self._busy
                and (q is None or q.empty())
            ):
                idle.append(key)
        for key in idle:
            logger.info("Cleaning up idle queue for sender %s", key[-4:])
            await self._destroy_queue(key)
        return len(idle)
