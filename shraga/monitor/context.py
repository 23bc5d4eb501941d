"""Run context — the cancellation signal shared by scheduler, workers and probes.

A context is cancelled once, with a cause. Child contexts are cancelled with
their parent and may carry their own deadline, so a single probe can time
out without affecting its siblings.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

T = TypeVar("T")

CANCELED = "context canceled"
DEADLINE_EXCEEDED = "context deadline exceeded"


class Cancelled(Exception):
    """Raised when awaited work is abandoned because its context ended."""

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(cause)


class RunContext:
    """Cancellable scope with an optional deadline.

    Lifecycle:
        ctx = RunContext()
        with ctx.child(timeout=30) as probe_ctx:
            resp = await probe_ctx.guard(client.send(req))
        ...
        ctx.cancel("shutdown")
    """

    def __init__(self, parent: RunContext | None = None, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._cause: str | None = None
        self._parent = parent
        self._children: set[RunContext] = set()
        self._timer: asyncio.TimerHandle | None = None

        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.cause or CANCELED)
                return
            parent._children.add(self)
        if timeout is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self.cancel, DEADLINE_EXCEEDED)

    # -- state -----------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> str | None:
        return self._cause

    def cancel(self, cause: str = CANCELED) -> None:
        """Cancel this context and every descendant. Later calls are no-ops."""
        if self._event.is_set():
            return
        self._cause = cause
        self._event.set()
        self._stop_timer()
        for child in list(self._children):
            child.cancel(cause)
        self._children.clear()
        self._detach()

    async def wait(self) -> str:
        """Block until cancelled and return the cause."""
        await self._event.wait()
        return self._cause or CANCELED

    # -- derivation ------------------------------------------------------------

    def child(self, timeout: float | None = None) -> RunContext:
        """Derive a context cancelled with this one or after ``timeout`` seconds."""
        return RunContext(parent=self, timeout=timeout)

    def __enter__(self) -> RunContext:
        return self

    def __exit__(self, *exc: Any) -> None:
        # Leaving the scope frees the child without cancelling it.
        self._stop_timer()
        self._detach()

    # -- awaiting --------------------------------------------------------------

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless this context ends first.

        On cancellation the wrapped work is cancelled and ``Cancelled`` is
        raised with the context's cause.
        """
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise Cancelled(self._cause or CANCELED)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise Cancelled(self._cause or CANCELED)

    # -- internals -------------------------------------------------------------

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _detach(self) -> None:
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None
