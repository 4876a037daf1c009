"""
Worker primitives — per-key serialization, bounded parallel pool, ticker.

  KeyedLocks       single writer per key (conversation, campaign, deal)
  KeyedWorkerPool  bounded parallelism across keys, FIFO per key, optional
                   de-duplication of keys already queued or running
  Ticker           periodic async callback owning its own start/stop

None of these hold global state; each is created by the orchestrator and
can be started and stopped independently in tests.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

logger = structlog.get_logger()

WorkFactory = Callable[[], Awaitable[Any]]


class KeyedLocks:
    """asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class KeyedWorkerPool:
    """
    Runs work units with at most `concurrency` in flight. Units sharing a key
    run one at a time in submission order (asyncio.Lock wakes waiters FIFO).
    A failing unit is logged and never takes the pool down.

    Usage:
        pool = KeyedWorkerPool(concurrency=16)
        pool.submit("conv-1", lambda: runner.resume(...))
        pool.submit_unique("campaign-9", lambda: dispatcher.run("campaign-9"))
        await pool.drain()
    """

    def __init__(
        self,
        concurrency: int = 16,
        name: str = "pool",
        on_error: Optional[Callable[[str, BaseException], None]] = None,
    ):
        self.name = name
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._locks = KeyedLocks()
        self._tasks: set[asyncio.Task] = set()
        self._unique_keys: set[str] = set()
        self._on_error = on_error
        self.completed = 0
        self.failed = 0

    def submit(self, key: str, factory: WorkFactory) -> asyncio.Task:
        task = asyncio.create_task(self._run(key, factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def submit_unique(self, key: str, factory: WorkFactory) -> Optional[asyncio.Task]:
        """Submit unless a unit for `key` is already queued or running."""
        if key in self._unique_keys:
            return None
        self._unique_keys.add(key)
        task = self.submit(key, factory)
        task.add_done_callback(lambda _t: self._unique_keys.discard(key))
        return task

    async def _run(self, key: str, factory: WorkFactory) -> Any:
        async with self._locks.hold(key):
            async with self._semaphore:
                try:
                    result = await factory()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed += 1
                    logger.error("work_unit_failed", pool=self.name, key=key,
                                 error=str(e), exc_info=True)
                    if self._on_error:
                        self._on_error(key, e)
                    return None
                self.completed += 1
                return result

    def is_busy(self, key: str) -> bool:
        return key in self._unique_keys or self._locks.locked(key)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted unit (including ones submitted meanwhile) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._unique_keys.clear()
        logger.info("worker_pool_stopped", pool=self.name,
                    completed=self.completed, failed=self.failed)


class Ticker:
    """
    Calls `callback` every `interval` seconds until stopped.

    Usage:
        ticker = Ticker("campaigns", scheduler.tick, interval=30)
        ticker.start()
        ...
        await ticker.stop()
    """

    def __init__(self, name: str, callback: Callable[[], Awaitable[Any]], interval: float):
        self.name = name
        self.callback = callback
        self.interval = interval
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ticker_stopped", ticker=self.name, ticks=self.ticks)

    async def _run(self) -> None:
        logger.info("ticker_started", ticker=self.name, interval=self.interval)
        while True:
            try:
                await self.callback()
                self.ticks += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("ticker_callback_failed", ticker=self.name, error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
