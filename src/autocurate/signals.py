"""Lightweight "read performed" / "mutation performed" notifications.

The API client emits one event after every request, whether it succeeded or
failed. Caches subscribe to mutation events to invalidate themselves, and the
orchestrator awaits them to detect that a save has been acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

LOGGER = logging.getLogger(__name__)

SignalKind = Literal["read", "mutation"]


@dataclass(frozen=True)
class RequestEvent:
    kind: SignalKind
    operation: str | None
    ok: bool
    duration: float


Listener = Callable[[RequestEvent], None]


class RequestSignals:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {"read": [], "mutation": []}
        self._waiters: dict[str, list[asyncio.Future[RequestEvent]]] = {"read": [], "mutation": []}

    def subscribe(self, kind: SignalKind, listener: Listener) -> None:
        if listener not in self._listeners[kind]:
            self._listeners[kind].append(listener)

    def unsubscribe(self, kind: SignalKind, listener: Listener) -> None:
        try:
            self._listeners[kind].remove(listener)
        except ValueError:
            pass

    def emit(self, event: RequestEvent) -> None:
        for listener in list(self._listeners[event.kind]):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Signal listener %r failed for %s event", listener, event.kind)

        waiters = self._waiters[event.kind]
        self._waiters[event.kind] = []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(event)

    def mutation_performed(self, operation: str | None = None) -> None:
        """Announce a write that did not go through the API client (a UI-side save)."""
        self.emit(RequestEvent(kind="mutation", operation=operation, ok=True, duration=0.0))

    def expect(self, kind: SignalKind) -> asyncio.Future[RequestEvent]:
        """Register interest in the next ``kind`` event before triggering it."""
        waiter: asyncio.Future[RequestEvent] = asyncio.get_running_loop().create_future()
        self._waiters[kind].append(waiter)
        return waiter

    async def wait_for(
        self,
        kind: SignalKind,
        timeout: float,
        *,
        waiter: asyncio.Future[RequestEvent] | None = None,
    ) -> RequestEvent | None:
        """Wait for the next ``kind`` event; None when ``timeout`` elapses first."""
        if waiter is None:
            waiter = self.expect(kind)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except TimeoutError:
            return None
        finally:
            if waiter in self._waiters[kind]:
                self._waiters[kind].remove(waiter)
