"""
Hierarchical cancellation tokens.

A token is a write-once "cancel requested" flag with observers. Children
derived from a token are cancelled with it; cancelling a child never touches
its parent or siblings.

Usage:
    root = CancellationToken("root")
    probe = root.child("probe")

    root.add_callback(lambda token: print(token.reason))
    if not await probe.sleep(5.0):
        return  # cancelled while sleeping
"""

from __future__ import annotations

import asyncio
from typing import Callable

from .logging import get_logger

logger = get_logger("cancellation")

Callback = Callable[["CancellationToken"], None]


class CancellationToken:
    """Write-once cancellation flag with callbacks and derived children."""

    def __init__(self, name: str = "root", parent: CancellationToken | None = None):
        self.name = name
        self.reason: str | None = None
        self._parent = parent
        self._cancelled = False
        self._callbacks: list[Callback] = []
        self._children: list[CancellationToken] = []
        self._event: asyncio.Event | None = None

        if parent is not None:
            parent._adopt(self)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationToken {self.name} {state}>"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def child(self, name: str) -> CancellationToken:
        """Derive a scoped token cancelled together with this one."""
        return CancellationToken(name, parent=self)

    def _adopt(self, child: CancellationToken) -> None:
        if self._cancelled:
            child.cancel(self.reason)
        else:
            self._children.append(child)

    def cancel(self, reason: str | None = None) -> bool:
        """
        Request cancellation.

        Children are cancelled before this token's own callbacks run.
        Returns False if the token was already cancelled.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason or f"{self.name} cancelled"
        logger.debug(f"Cancelled {self.name}: {self.reason}")

        if self._event is not None:
            self._event.set()

        children, self._children = self._children, []
        for child in children:
            child.cancel(self.reason)

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"Cancellation callback failed on {self.name}")

        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        return True

    def add_callback(self, callback: Callback) -> Callable[[], None]:
        """
        Register an observer; runs immediately if already cancelled.

        Returns a function that unregisters the observer.
        """
        if self._cancelled:
            callback(self)
            return lambda: None
        self._callbacks.append(callback)
        return lambda: self.remove_callback(callback)

    def remove_callback(self, callback: Callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> None:
        """Suspend until cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for delay seconds unless cancelled first.

        Returns True if the full delay elapsed, False on cancellation.
        """
        if self._cancelled:
            return False
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            if not waiter.done():
                waiter.cancel()
                await asyncio.gather(waiter, return_exceptions=True)
        return not self._cancelled
