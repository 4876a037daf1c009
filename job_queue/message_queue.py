"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  automation:inbound   — Inbound webhook events waiting to be processed
  automation:delayed   — Retries waiting for their backoff (sorted set in Redis)
  automation:dlq       — Jobs that exhausted their attempts or cannot be handled

A retried job remembers the queue it came from (`QueueJob.queue`) and is
promoted back there once its backoff has elapsed.

Job fields on the wire (Redis stream entries are flat str → str):
  job_id        stable across retries
  kind          what the payload is, e.g. "inbound_event"
  key           serialization key for the worker pool
  queue         home queue, target of delayed promotion
  payload       JSON-encoded dict
  attempt       0-based attempt number
  max_attempts  ceiling before the DLQ
  scheduled_at  ISO timestamp, earliest execution
  created_at    ISO timestamp of the first enqueue
  metadata      JSON-encoded dict (failure times, dlq_reason)
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]

_JSON_FIELDS = ("payload", "metadata")
_INT_FIELDS = ("attempt", "max_attempts")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class Queues:
    INBOUND = "automation:inbound"
    DELAYED = "automation:delayed"
    DLQ = "automation:dlq"


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    kind: str
    key: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""
    queue: str = Queues.INBOUND

    def __post_init__(self):
        self.job_id = self.job_id or f"job_{uuid.uuid4().hex[:12]}"
        self.created_at = self.created_at or _now().isoformat()
        self.scheduled_at = self.scheduled_at or self.created_at

    def to_dict(self) -> dict[str, str]:
        data = asdict(self)
        for name in _JSON_FIELDS:
            data[name] = json.dumps(data[name])
        for name in _INT_FIELDS:
            data[name] = str(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name in _JSON_FIELDS:
            if isinstance(known.get(name), str):
                known[name] = json.loads(known[name])
        for name in _INT_FIELDS:
            if name in known:
                known[name] = int(known[name])
        return cls(**known)

    @property
    def due_at(self) -> datetime:
        return _parse_ts(self.scheduled_at) or _now()

    @property
    def is_scheduled_now(self) -> bool:
        return _now() >= self.due_at

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: int = 5) -> QueueJob:
        """Copy for the next attempt, due after an exponential backoff."""
        now = _now()
        return QueueJob(
            kind=self.kind,
            key=self.key,
            payload=self.payload,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=(now + timedelta(seconds=backoff_seconds * 2 ** self.attempt)).isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
            job_id=self.job_id,
            queue=self.queue,
        )


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """
    Backends implement transport only. Retry / DLQ routing and handler
    error containment are shared here.
    """

    def __init__(self, retry_backoff_base: int = 5):
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Hold `job` until job.scheduled_at, then promote it to job.queue."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """Block, calling `handler` per job until stop_consuming()."""
        ...

    @abstractmethod
    async def dead_letter(self, job: QueueJob):
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        ...

    @abstractmethod
    async def promote_delayed(self):
        ...

    def stop_consuming(self):
        self._running = False

    async def _handle(self, job: QueueJob, handler: JobHandler):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error", job_id=job.job_id, kind=job.kind, error=str(e))
            await self.nack(job)

    async def nack(self, job: QueueJob):
        """Schedule a retry, or park the job in the DLQ once attempts run out."""
        if job.exhausted:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            await self.dead_letter(job)
            logger.warning("job_moved_to_dlq", job_id=job.job_id, kind=job.kind,
                           attempts=job.attempt + 1)
            return
        retry = job.next_retry_job(self.retry_backoff_base)
        await self.publish_delayed(retry)
        logger.info("job_scheduled_for_retry", job_id=job.job_id,
                    attempt=retry.attempt, scheduled_at=retry.scheduled_at)


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Inbound and DLQ are Redis Streams (consumer groups give each job to one
    worker process); delayed retries are a sorted set scored by due time.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: int = 5):
        super().__init__(retry_backoff_base)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True, max_connections=20)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published", queue=queue, job_id=job.job_id, kind=job.kind, key=job.key)

    async def publish_delayed(self, job: QueueJob):
        await self._redis.zadd(Queues.DELAYED, {json.dumps(job.to_dict()): job.due_at.timestamp()})
        logger.info("delayed_job_published", job_id=job.job_id, scheduled_at=job.scheduled_at)

    async def dead_letter(self, job: QueueJob):
        await self.publish(Queues.DLQ, job)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started", queue=queue, group=consumer_group, consumer=consumer_name)

        while self._running:
            try:
                batches = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,
                )
                for _stream, entries in batches or []:
                    for entry_id, fields in entries:
                        await self._handle(QueueJob.from_dict(fields), handler)
                        await self._redis.xack(queue, consumer_group, entry_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def promote_delayed(self):
        due = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", _now().timestamp())
        if not due:
            return
        pipe = self._redis.pipeline()
        for raw in due:
            job = QueueJob.from_dict(json.loads(raw))
            pipe.xadd(job.queue, job.to_dict())
            pipe.zrem(Queues.DELAYED, raw)
        await pipe.execute()
        logger.info("delayed_jobs_promoted", count=len(due))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """Single-process queue for development and tests. No persistence."""

    def __init__(self, retry_backoff_base: int = 5, promote_interval: float = 5.0):
        super().__init__(retry_backoff_base)
        self.promote_interval = promote_interval
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[QueueJob] = []
        self.dlq: list[QueueJob] = []
        self._promoter: Optional[asyncio.Task] = None

    def _queue(self, name: str) -> asyncio.Queue:
        return self._queues.setdefault(name, asyncio.Queue())

    async def connect(self):
        self._running = True
        self._promoter = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._promoter:
            self._promoter.cancel()
            try:
                await self._promoter
            except asyncio.CancelledError:
                pass
            self._promoter = None

    async def publish(self, queue: str, job: QueueJob):
        await self._queue(queue).put(job)
        logger.info("job_published", queue=queue, job_id=job.job_id, kind=job.kind, key=job.key)

    async def publish_delayed(self, job: QueueJob):
        self._delayed.append(job)
        self._delayed.sort(key=lambda j: j.due_at)
        logger.info("delayed_job_published", job_id=job.job_id, scheduled_at=job.scheduled_at)

    async def dead_letter(self, job: QueueJob):
        self.dlq.append(job)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        source = self._queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)

        while self._running:
            try:
                job = await asyncio.wait_for(source.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self._handle(job, handler)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self.dlq)
        return self._queue(queue).qsize()

    async def promote_delayed(self):
        due = [job for job in self._delayed if job.is_scheduled_now]
        if not due:
            return
        self._delayed = [job for job in self._delayed if not job.is_scheduled_now]
        for job in due:
            await self.publish(job.queue, job)
        logger.info("delayed_jobs_promoted", count=len(due))

    async def _promote_loop(self):
        while self._running:
            try:
                await self.promote_delayed()
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config=None) -> MessageQueue:
    """Build the backend named by QueueConfig.backend ("memory" | "redis")."""
    global _instance
    if queue_config is None:
        from config.settings import get_settings
        queue_config = get_settings().queue

    if queue_config.backend == "redis":
        _instance = RedisMessageQueue(
            redis_url=queue_config.redis_url,
            retry_backoff_base=queue_config.retry_backoff_base,
        )
    else:
        _instance = InMemoryMessageQueue(
            retry_backoff_base=queue_config.retry_backoff_base,
            promote_interval=queue_config.delayed_promote_interval,
        )
    return _instance


def get_message_queue() -> MessageQueue:
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue():
    global _instance
    _instance = None
