# processing/cancellation.py
"""Cooperative cancellation shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from processing.errors import EngineUsageError, OperationCancelledError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag with listeners.

    The flag only moves from not-cancelled to cancelled. Listeners registered
    with :meth:`on_cancel` fire exactly once, synchronously, on the thread that
    calls :meth:`cancel`. Waits and provider calls inside the engine go
    through :meth:`sleep` and :meth:`race` so they resolve as soon as the
    token fires, whichever thread fired it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._listeners: dict[int, Callable[[], None]] = {}
        self._next_handle = 0
        self._claimed = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the token. Returns ``True`` only for the call that flipped it."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            listeners = list(self._listeners.values())
            self._listeners.clear()

        logger.info("Cancellation requested.", reason=reason, listeners=len(listeners))
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.error("Cancellation listener raised.", exc_info=True)
        return True

    def on_cancel(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it.

        If the token is already cancelled the listener runs immediately.
        """
        with self._lock:
            if not self._cancelled:
                handle = self._next_handle
                self._next_handle += 1
                self._listeners[handle] = listener

                def _remove() -> None:
                    with self._lock:
                        self._listeners.pop(handle, None)

                return _remove

        listener()
        return lambda: None

    def claim(self) -> None:
        """Bind the token to a single run."""
        with self._lock:
            if self._claimed:
                raise EngineUsageError(
                    "CancellationToken already used by another run; create a fresh token."
                )
            self._claimed = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(self._reason or "Run cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` unless cancelled first.

        Returns ``True`` when the full delay elapsed and ``False`` when the
        token fired (before or during the wait).
        """
        if self._cancelled:
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self._cancelled

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _resolve() -> None:
            if not waiter.done():
                waiter.set_result(None)

        def _wake() -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(_resolve)

        remove = self.on_cancel(_wake)
        try:
            done, _ = await asyncio.wait({waiter}, timeout=seconds)
        finally:
            remove()
            if not waiter.done():
                waiter.cancel()
        return not done and not self._cancelled

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` but abort it as soon as the token fires.

        Raises :class:`OperationCancelledError` when cancellation wins.
        """
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)

        def _abort() -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(task.cancel)

        remove = self.on_cancel(_abort)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise OperationCancelledError(
                    self._reason or "Run cancelled"
                ) from None
            raise
        finally:
            remove()
