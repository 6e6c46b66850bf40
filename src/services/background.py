"""Background jobs (settlement, checkout polling) and per-key locks."""

import asyncio
from contextlib import asynccontextmanager
from typing import Coroutine, Hashable, Optional

from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)


class BackgroundTaskSupervisor:
    """Owns detached asyncio tasks so none are lost or fail silently.

    Jobs are keyed; a key may have at most one live job. Finished jobs are
    dropped from the registry and failures are logged from the done callback.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def spawn(self, key: str, coro: Coroutine) -> Optional[asyncio.Task]:
        """Start a job under a key; returns None if a job with that key is still running."""
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            logger.debug("Background job already running", job=key)
            coro.close()
            return None

        task = asyncio.ensure_future(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        logger.debug("Background job started", job=key)
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

        if task.cancelled():
            logger.info("Background job cancelled", job=key)
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background job failed",
                job=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel(self, key: str) -> bool:
        """Cancel the job registered under a key."""
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every job, including ones spawned meanwhile, has finished."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, _ = await asyncio.wait(pending, timeout=remaining)
            if deadline is not None and loop.time() >= deadline and len(done) < len(pending):
                raise asyncio.TimeoutError("background jobs still running")

    async def shutdown(self) -> None:
        """Cancel all running jobs and wait for them to unwind."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background supervisor stopped", cancelled=len(tasks))


class KeyedLocks:
    """One asyncio lock per key, dropped once no holder or waiter remains."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
