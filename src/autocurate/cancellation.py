"""Cooperative cancellation passed down through every suspension point of a run."""

from __future__ import annotations

import asyncio
import time

from .errors import AutomationCancelled, SourceSkipped

POLL_INTERVAL = 0.1


class CancellationToken:
    """Cancel and skip requests, polled by the code that owns the run.

    ``cancel()`` ends the whole run at the next poll point. ``request_skip()``
    ends only the provider currently being processed; the flag is cleared once
    the skip has been observed with :meth:`consume_skip`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._skip_requested = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def skip_requested(self) -> bool:
        return self._skip_requested

    def cancel(self, reason: str = "cancelled by user") -> None:
        self._cancelled = True
        self.reason = reason

    def request_skip(self) -> None:
        self._skip_requested = True

    def consume_skip(self) -> bool:
        requested = self._skip_requested
        self._skip_requested = False
        return requested

    def check(self, *, allow_skip: bool = True) -> None:
        if self._cancelled:
            raise AutomationCancelled(self.reason or "cancelled by user")
        if allow_skip and self._skip_requested:
            raise SourceSkipped("user skipped")

    async def sleep(self, seconds: float, *, allow_skip: bool = True) -> None:
        """Sleep for ``seconds`` while polling for cancel/skip requests."""
        deadline = time.monotonic() + max(seconds, 0.0)
        self.check(allow_skip=allow_skip)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(POLL_INTERVAL, remaining))
            self.check(allow_skip=allow_skip)
