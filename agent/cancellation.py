"""Per-session cancellation token.

Shared between the asyncio loop (stream consumer, tool gather) and the worker
threads that run blocking tools, so it wraps a ``threading.Event`` and lets
coroutines await it through loop-safe callbacks.
"""

import asyncio
import threading
from typing import Callable, List, Optional


class CancelledByUser(Exception):
    """Raised inside the loop when the session token fires."""


class CancelToken:
    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocking wait, for use in worker threads."""
        return self._event.wait(timeout)

    def add_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(cb)
            except ValueError:
                pass

    async def wait_async(self) -> None:
        """Resolve once the token fires. Safe to cancel."""
        loop = asyncio.get_running_loop()
        fut = loop.create_future()

        def _wake():
            loop.call_soon_threadsafe(lambda: fut.done() or fut.set_result(None))

        self.add_callback(_wake)
        try:
            await fut
        finally:
            self.remove_callback(_wake)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledByUser(self.reason or "cancelled")


async def _cancel_and_wait(task: asyncio.Future) -> None:
    task.cancel()
    # Let the task unwind so generators it was driving are no longer running.
    await asyncio.gather(task, return_exceptions=True)


async def race_cancel(awaitable, token: Optional[CancelToken]):
    """Await *awaitable* unless *token* fires first.

    Raises ``CancelledByUser`` when the token wins; the pending work is
    cancelled and has unwound before this returns.
    """
    task = asyncio.ensure_future(awaitable)
    if token is None:
        return await task
    if token.cancelled:
        await _cancel_and_wait(task)
        raise CancelledByUser(token.reason or "cancelled")
    waiter = asyncio.ensure_future(token.wait_async())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    await _cancel_and_wait(task)
    raise CancelledByUser(token.reason or "cancelled")
