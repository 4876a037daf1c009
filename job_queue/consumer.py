"""
Queue Consumer — Pulls inbound webhook events from the queue and hands
them to the orchestrator.

Runs as an async task inside the application process. For horizontal
scaling, deploy multiple processes with the same consumer_group; Redis
Streams delivers each job to exactly one consumer.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌──────────────────┐
  │ Webhook API  │──pub──▶│ inbound queue    │──────▶│ Consumer         │
  └──────────────┘       │ (Redis Stream)   │       │  → worker pool   │
                         └─────────────────┘       │   keyed by       │
                                  ▲                 │   contact        │
                                  │ promote         └─────┬────────────┘
                         ┌────────┴────────┐              │
                         │ delayed (sorted  │◀── retry ───┤
                         │  set / promoter) │              │
                         └─────────────────┘              │
                         ┌─────────────────┐              │
                         │  DLQ            │◀── exhaust ──┘
                         └─────────────────┘

Events for the same contact on the same connection share a pool key, so
they are processed one at a time in arrival order.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from job_queue.message_queue import MessageQueue, QueueJob, Queues, get_message_queue
from job_queue.workers import KeyedWorkerPool
from models.schemas import InboundEvent

logger = structlog.get_logger()

INBOUND_EVENT = "inbound_event"

InboundHandler = Callable[[InboundEvent], Awaitable[Any]]


def event_key(event: InboundEvent) -> str:
    return f"{event.connection_id}:{event.remote_jid}"


async def publish_inbound(event: InboundEvent, queue: Optional[MessageQueue] = None) -> QueueJob:
    """Enqueue one inbound event for asynchronous processing."""
    queue = queue or get_message_queue()
    job = QueueJob(kind=INBOUND_EVENT, key=event_key(event), payload=event.model_dump(mode="json"))
    await queue.publish(Queues.INBOUND, job)
    return job


class InboundEventConsumer:
    """
    Consumes jobs from the inbound queue and runs them on a keyed pool.

    Usage:
        consumer = InboundEventConsumer(orchestrator.handle_inbound, queue, pool)
        await consumer.start_background()
        await consumer.stop()
    """

    def __init__(
        self,
        handler: InboundHandler,
        queue: Optional[MessageQueue] = None,
        pool: Optional[KeyedWorkerPool] = None,
        consumer_group: str = "automation-workers",
        consumer_name: str = "",
    ):
        self.handler = handler
        self.queue = queue or get_message_queue()
        self.pool = pool or KeyedWorkerPool(name="inbound")
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self._task: Optional[asyncio.Task] = None
        self.processed = 0

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        logger.info("inbound_consumer_starting", group=self.consumer_group,
                    concurrency=self.pool.concurrency)
        await self.queue.consume(
            queue=Queues.INBOUND,
            handler=self.dispatch,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self):
        """Stop reading and let in-flight units finish."""
        self.queue.stop_consuming()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.pool.drain()
        logger.info("inbound_consumer_stopped", processed=self.processed)

    async def dispatch(self, job: QueueJob) -> Optional[asyncio.Task]:
        """Route one job onto the pool. Unknown kinds are dead-lettered."""
        if job.kind != INBOUND_EVENT:
            logger.error("unknown_job_kind", job_id=job.job_id, kind=job.kind)
            job.metadata["dlq_reason"] = f"Unknown job kind '{job.kind}'"
            await self.queue.dead_letter(job)
            return None
        return self.pool.submit(job.key, lambda: self._process(job))

    async def _process(self, job: QueueJob):
        """Run the handler; a failure goes back through the queue's retry / DLQ path."""
        event = InboundEvent.model_validate(job.payload)
        logger.info("processing_inbound_event", job_id=job.job_id, key=job.key, attempt=job.attempt)
        try:
            await self.handler(event)
        except Exception as e:
            logger.error("inbound_event_failed", job_id=job.job_id, key=job.key,
                         error=str(e), exc_info=True)
            await self.queue.nack(job)
            return
        self.processed += 1
