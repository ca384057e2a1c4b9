"""Background task bridge.

Architecture:
    caller -> TaskBridge.submit() -> ThreadPoolExecutor(N) -> model load / inference

The caller receives a ``concurrent.futures.Future`` immediately and never
blocks on the work itself. Every submission completes exactly once, with a
result or with the exception the work raised. Event-loop callers can await
``TaskBridge.run`` instead.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from leafdx.exceptions import NotInitializedError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskBridge:
    """Runs units of work on a small worker pool and hands back futures."""

    def __init__(self, max_workers: int) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="leafdx-worker",
        )
        self._active_count: int = 0
        self._pending_count: int = 0
        self._counter_lock = threading.Lock()
        self._closed = False

    def submit(self, func: Callable[..., T], *args: object) -> Future[T]:
        """Schedule ``func(*args)`` on a worker thread.

        After ``shutdown`` the returned future is already failed with
        ``NotInitializedError``.
        """
        with self._counter_lock:
            if self._closed:
                return self.failed(NotInitializedError("Task bridge has been shut down"))
            self._pending_count += 1
            # Submitting under the lock keeps shutdown from closing the
            # executor between the check and the submit.
            return self._executor.submit(self._track, func, *args)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit ``func`` and await its result from an asyncio event loop."""
        return await asyncio.wrap_future(self.submit(func, *args))

    @staticmethod
    def completed(value: T) -> Future[T]:
        """Return a future that has already succeeded with ``value``."""
        future: Future[T] = Future()
        future.set_result(value)
        return future

    @staticmethod
    def failed(exc: BaseException) -> Future[T]:
        """Return a future that has already failed with ``exc``."""
        future: Future[T] = Future()
        future.set_exception(exc)
        return future

    @property
    def active_count(self) -> int:
        """Number of tasks currently running on a worker."""
        with self._counter_lock:
            return self._active_count

    @property
    def pending_count(self) -> int:
        """Number of accepted tasks waiting for a free worker."""
        with self._counter_lock:
            return self._pending_count

    @property
    def closed(self) -> bool:
        with self._counter_lock:
            return self._closed

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with ``wait`` block until accepted work finishes."""
        with self._counter_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.debug("Task bridge shut down")

    def _track(self, func: Callable[..., T], *args: object) -> T:
        with self._counter_lock:
            self._pending_count -= 1
            self._active_count += 1
        try:
            return func(*args)
        finally:
            with self._counter_lock:
                self._active_count -= 1
