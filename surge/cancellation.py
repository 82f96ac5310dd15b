"""
Cooperative cancellation tokens.

A token is cancelled once and stays cancelled. Tokens form a tree: the run
token is the root, each phase gets a child whose deadline only affects that
phase. Cancelling a parent cancels every child; cancelling a child never
touches its parent or siblings.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger("surge.cancellation")


class CancellationToken:
    """
    Cooperative stop signal threaded through every suspension point.

    Usage:
        run_token = CancellationToken("run")
        phase_token = run_token.child("Phase 1")
        if await phase_token.sleep(1.5):
            return  # cancelled while sleeping
    """

    def __init__(self, name: str = "run", parent: CancellationToken | None = None) -> None:
        self.name = name
        self.reason: str | None = None
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self._parent = parent
        if parent is not None and parent.cancelled:
            self._event.set()
            self.reason = parent.reason

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation of this token and all of its children."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug(f"Token {self.name} cancelled: {reason}")
        for child in list(self._children):
            child.cancel(reason)

    def child(self, name: str) -> CancellationToken:
        """Create a narrower token that is cancelled together with this one."""
        token = CancellationToken(name, parent=self)
        self._children.append(token)
        return token

    def detach(self) -> None:
        """Remove this token from its parent once its scope has ended."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)

    async def wait(self) -> None:
        """Block until cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to ``seconds``, returning early on cancellation.

        Returns:
            True if the token was cancelled before or during the sleep
        """
        if self.cancelled:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(name={self.name!r}, cancelled={self.cancelled})"
