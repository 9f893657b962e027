"""
Background work for the completion pipeline.

The HTTP route acknowledges a turn immediately and the model call, the
persistence and the follow-up image work continue in tracked asyncio tasks.
Each task ends in a TaskOutcome instead of an unobserved exception.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
TIMEOUT = "timeout"


@dataclass(frozen=True)
class TaskOutcome:
    name: str
    status: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


class BackgroundRunner:
    """Spawns named coroutines and keeps a handle on them until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro_factory: Callable[[], Awaitable[Any]],
              timeout: Optional[float] = None,
              on_done: Optional[Callable[[TaskOutcome], Any]] = None) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, coro_factory, timeout, on_done), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro_factory: Callable[[], Awaitable[Any]],
                   timeout: Optional[float],
                   on_done: Optional[Callable[[TaskOutcome], Any]]) -> TaskOutcome:
        try:
            if timeout:
                value = await asyncio.wait_for(coro_factory(), timeout=timeout)
            else:
                value = await coro_factory()
            outcome = TaskOutcome(name, SUCCESS, value=value)
        except asyncio.TimeoutError as e:
            logger.error(f"[BACKGROUND] {name} timed out after {timeout}s")
            outcome = TaskOutcome(name, TIMEOUT, error=e)
        except Exception as e:
            logger.exception(f"[BACKGROUND] {name} failed: {e}")
            outcome = TaskOutcome(name, FAILURE, error=e)

        if on_done is not None:
            try:
                result = on_done(outcome)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.exception(f"[BACKGROUND] on_done for {name} failed: {e}")
        return outcome

    async def drain(self) -> None:
        """Wait for every task, including tasks spawned while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class KeyedLock:
    """One asyncio.Lock per key; entries are released when no one holds or waits on them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Any):
        key = str(key)
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
