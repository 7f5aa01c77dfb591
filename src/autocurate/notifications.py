"""Terminal run notifications: one event per automation run, fanned out to targets."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from .config import NotificationSettings

LOGGER = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10.0


@dataclass
class RunNotification:
    scene_id: str | None
    scene_name: str | None
    outcome: str  # success, failure, cancelled
    sources_used: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class Notifier(Protocol):
    async def notify(self, event: RunNotification) -> None: ...


class NotificationTarget:
    name: str = "target"

    def enabled(self) -> bool:
        return True

    async def send(self, event: RunNotification) -> None:
        raise NotImplementedError


class LoggingTarget(NotificationTarget):
    name = "log"

    async def send(self, event: RunNotification) -> None:
        level = logging.INFO if event.outcome == "success" else logging.WARNING
        LOGGER.log(
            level,
            "Automation %s for %s (sources: %s)%s",
            event.outcome,
            event.scene_name or event.scene_id or "unknown scene",
            ", ".join(event.sources_used) or "none",
            f" errors: {'; '.join(event.errors)}" if event.errors else "",
        )


class WebhookTarget(NotificationTarget):
    """POSTs the run notification as JSON."""

    name = "webhook"

    def __init__(
        self,
        url: str | None,
        *,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url.strip() if isinstance(url, str) else None
        self.headers = {str(k): str(v) for k, v in (headers or {}).items()}
        self.transport = transport

    def enabled(self) -> bool:
        return bool(self.url)

    async def send(self, event: RunNotification) -> None:
        if not self.enabled():
            return
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=WEBHOOK_TIMEOUT) as client:
                response = await client.post(self.url, json=event.to_payload(), headers=self.headers or None)
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to send webhook notification: %s", exc)
            return

        if response.status_code >= 400:
            LOGGER.warning("Webhook %s responded with %s: %s", self.url, response.status_code, response.text)


class NotificationService:
    """Delivers each run notification to every enabled target; a failing target never blocks the others."""

    def __init__(self, targets: list[NotificationTarget] | None = None) -> None:
        self._targets = list(targets) if targets is not None else [LoggingTarget()]

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> NotificationService:
        targets: list[NotificationTarget] = [LoggingTarget()]
        if settings.webhook_url:
            targets.append(WebhookTarget(settings.webhook_url, headers=settings.headers))
        return cls(targets)

    @property
    def targets(self) -> list[NotificationTarget]:
        return list(self._targets)

    async def notify(self, event: RunNotification) -> None:
        for target in self._targets:
            if not target.enabled():
                continue
            try:
                await target.send(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Notification target %s failed", target.name)
