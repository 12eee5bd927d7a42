"""
Per-key serialization of asynchronous work.

At most one task runs per key at any time; further submissions for the
same key wait in arrival order. Distinct keys run independently.

Lifecycle of a key's state: created on the first submit, removed as soon
as its queue drains. Idle keys hold no memory.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from benefit_guard.config.logging import get_logger

logger = get_logger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class _KeyState:
    pending: Deque[Tuple[TaskFactory, "asyncio.Future[Any]"]] = field(default_factory=deque)
    running: bool = False
    current: Optional["asyncio.Task[None]"] = None


class PerKeyDispatchQueue:
    """FIFO dispatch of coroutine factories, one in flight per key.

    The returned future resolves with the task's result or error. A caller
    that stops waiting does not cancel the task: it still runs to
    completion in its turn and its result is discarded.
    """

    def __init__(self):
        self._queues: Dict[str, _KeyState] = {}

    def submit(self, key: str, task: TaskFactory) -> "asyncio.Future[Any]":
        """Queue ``task`` for ``key`` and return a future for its result.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()

        state = self._queues.get(key)
        if state is None:
            state = self._queues[key] = _KeyState()
        state.pending.append((task, future))

        if not state.running:
            self._dispatch(key, state)
        else:
            logger.debug("dispatch_queued", key=key, waiting=len(state.pending))
        return future

    def _dispatch(self, key: str, state: _KeyState) -> None:
        task, future = state.pending.popleft()
        state.running = True
        state.current = asyncio.ensure_future(self._run(key, state, task, future))

    async def _run(
        self,
        key: str,
        state: _KeyState,
        task: TaskFactory,
        future: "asyncio.Future[Any]",
    ) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            else:
                logger.warning("dispatch_result_dropped", key=key, error=str(e))
        else:
            if not future.done():
                future.set_result(result)
            else:
                logger.debug("dispatch_result_dropped", key=key)
        finally:
            self._complete(key, state)

    def _complete(self, key: str, state: _KeyState) -> None:
        state.current = None
        if state.pending:
            # next task starts as its own unit of work, not from this stack
            asyncio.get_running_loop().call_soon(self._dispatch, key, state)
        else:
            state.running = False
            if self._queues.get(key) is state:
                del self._queues[key]

    def is_busy(self, key: str) -> bool:
        """True while a task for ``key`` is running or waiting."""
        return key in self._queues

    def waiting(self, key: str) -> int:
        """Number of tasks for ``key`` not yet dispatched."""
        state = self._queues.get(key)
        return len(state.pending) if state else 0

    def __len__(self) -> int:
        """Number of keys with live state."""
        return len(self._queues)
