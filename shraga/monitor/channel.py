"""Unbuffered dispatch channel between the scheduler and the worker pool.

``send`` returns only once a receiver has taken the item, so a producer can
never run further ahead than the number of idle consumers.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised on send to, or receive from, a closed and drained channel."""


class DispatchChannel(Generic[T]):
    """Rendezvous handoff: no item is ever buffered without a taker."""

    def __init__(self) -> None:
        self._senders: deque[tuple[T, asyncio.Future[None]]] = deque()
        self._receivers: deque[asyncio.Future[T]] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: T) -> None:
        """Hand ``item`` to a receiver, waiting until one takes it."""
        if self._closed:
            raise ChannelClosed("send on closed channel")

        while self._receivers:
            receiver = self._receivers.popleft()
            if not receiver.done():
                receiver.set_result(item)
                return

        handoff: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (item, handoff)
        self._senders.append(entry)
        try:
            await handoff
        except asyncio.CancelledError:
            with contextlib.suppress(ValueError):
                self._senders.remove(entry)
            raise

    async def receive(self) -> T:
        """Take the next item, waiting for a sender if none is pending."""
        while self._senders:
            item, handoff = self._senders.popleft()
            if not handoff.done():
                handoff.set_result(None)
                return item

        if self._closed:
            raise ChannelClosed("channel closed")

        receiver: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._receivers.append(receiver)
        try:
            return await receiver
        except asyncio.CancelledError:
            with contextlib.suppress(ValueError):
                self._receivers.remove(receiver)
            raise

    def close(self) -> None:
        """Close the channel and wake every waiting sender and receiver."""
        if self._closed:
            return
        self._closed = True
        while self._receivers:
            receiver = self._receivers.popleft()
            if not receiver.done():
                receiver.set_exception(ChannelClosed("channel closed"))
        while self._senders:
            _, handoff = self._senders.popleft()
            if not handoff.done():
                handoff.set_exception(ChannelClosed("send on closed channel"))
