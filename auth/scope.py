"""
auth/scope.py -- Structured lifetime for in-flight auth operations.

Every facade operation runs as a task owned by a TaskScope. Closing the scope
cancels whatever is still in flight, so a request started by a view that has
since gone away is aborted instead of completing against state nobody
observes. The cancelled operation resolves to the caller-supplied default
(False / None) rather than leaking CancelledError into the caller.

Cancellation of the *calling* task is not swallowed: if the awaiting
coroutine itself is being cancelled, CancelledError propagates as usual.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class TaskScope:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def run(self, coro: Coroutine[Any, Any, T], default: T) -> T:
        if self._closed:
            coro.close()
            return default
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return default
        finally:
            self._tasks.discard(task)

    def close(self) -> None:
        """Cancel all in-flight operations and refuse new ones."""
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
