"""Single-consumer job worker with a minimum start-to-start interval."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")

_Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class RateLimitedWorker:
    """Runs submitted coroutines one at a time.

    Two consecutive jobs never start less than ``min_interval`` seconds apart.
    All callers sharing a worker share its rate limit.
    """

    def __init__(self, min_interval: float = 0.15, name: str = "rate-limited-worker") -> None:
        if min_interval < 0:
            msg = "min_interval must not be negative"
            raise ValueError(msg)
        self._min_interval = min_interval
        self._name = name
        self._queue: asyncio.Queue[_Job] | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_start: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._fail_pending()

    async def submit(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Queue ``func(*args, **kwargs)`` and wait for its result."""
        await self.start()
        assert self._queue is not None
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put((lambda: func(*args, **kwargs), future))
        return await future

    async def _wait_for_slot(self) -> None:
        if self._last_start is None:
            return
        loop = asyncio.get_running_loop()
        remaining = self._last_start + self._min_interval - loop.time()
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            job, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                await self._wait_for_slot()
                self._last_start = asyncio.get_running_loop().time()
                try:
                    result = await job()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pylint: disable=broad-except
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    def _fail_pending(self) -> None:
        if self._queue is None:
            return
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
        logger.debug("Worker %s stopped", self._name)
