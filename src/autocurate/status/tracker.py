"""In-memory status snapshot of the scene currently open in the UI."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from ..config import ProviderSettings
from ..errors import AutocurateError
from ..utils import parse_iso_timestamp, utc_now
from .providers import ORGANIZED_ASPECT
from .strategies import DetectionResult

if TYPE_CHECKING:
    from ..stash.client import StashClient
    from ..stash.models import Scene
    from ..ui_adapter import UIAdapter
    from .detector import StatusDetector

LOGGER = logging.getLogger(__name__)

AUTOMATION_ASPECT = "automation"

StatusCallback = Callable[[dict[str, Any]], None]


@dataclass
class ProviderStatus:
    scraped: bool = False
    timestamp: dt.datetime | None = None
    confidence: int = 0
    data: Mapping[str, Any] | None = None
    strategy: str | None = None

    @classmethod
    def from_result(cls, result: DetectionResult) -> ProviderStatus:
        # The scene's own update time, never the detection time.
        updated = (result.data or {}).get("last_updated") if result.found else None
        return cls(
            scraped=result.found,
            timestamp=parse_iso_timestamp(updated),
            confidence=result.confidence,
            data=result.data,
            strategy=result.strategy,
        )


@dataclass
class AutomationSummary:
    timestamp: dt.datetime
    success: bool | None = None
    sources_used: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusSnapshot:
    entity_id: str | None = None
    url: str | None = None
    last_update: dt.datetime | None = None
    providers: dict[str, ProviderStatus] = field(default_factory=dict)
    organized: bool = False
    scene_name: str | None = None
    last_automation: AutomationSummary | None = None


class StatusTracker:
    """Holds the current :class:`StatusSnapshot` and tells observers about changes.

    A detection pass fetches the scene once through the client's coalesced
    cache and derives every aspect from it; when the fetch fails the detector
    falls back to its page strategies.
    """

    def __init__(
        self,
        client: StashClient,
        detector: StatusDetector,
        providers: list[ProviderSettings],
        *,
        ui: UIAdapter | None = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.client = client
        self.detector = detector
        self.providers = list(providers)
        self.ui = ui
        self._clock = clock
        self._callbacks: list[StatusCallback] = []
        self.snapshot = self._empty_snapshot()

    def _empty_snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            url=self.ui.current_location() if self.ui is not None else None,
            providers={provider.id: ProviderStatus() for provider in self.providers},
        )

    async def detect_current_status(self, entity_id: str | None = None) -> StatusSnapshot:
        entity_id = entity_id or (self.ui.current_entity_id() if self.ui is not None else None)
        now = self._clock()

        scene: Scene | None = None
        if entity_id:
            try:
                scene = await self.client.get_scene_cached(entity_id)
            except AutocurateError as exc:
                LOGGER.debug("Scene %s fetch failed, falling back to page detection: %s", entity_id, exc)

        providers: dict[str, ProviderStatus] = {}
        for provider in self.providers:
            result = await self.detector.detect_provider_data(provider.id, scene)
            providers[provider.id] = ProviderStatus.from_result(result)
        organized = await self.detector.detect_organized(scene)

        self.snapshot = StatusSnapshot(
            entity_id=entity_id,
            url=self.ui.current_location() if self.ui is not None else None,
            last_update=now,
            providers=providers,
            organized=bool(organized.organized),
            scene_name=scene.display_name if scene is not None else None,
            last_automation=self.snapshot.last_automation,
        )
        self._notify()
        return self.snapshot

    def update_status(self, aspect: str, partial: Mapping[str, Any]) -> None:
        """Merge ``partial`` into the provider, organized or automation aspect."""
        now = self._clock()
        if aspect == ORGANIZED_ASPECT:
            self.snapshot.organized = bool(partial.get("organized", False))
        elif aspect == AUTOMATION_ASPECT:
            extra = {
                key: value
                for key, value in partial.items()
                if key not in {"success", "sources_used", "errors", "timestamp"}
            }
            self.snapshot.last_automation = AutomationSummary(
                timestamp=now,
                success=partial.get("success"),
                sources_used=list(partial.get("sources_used") or []),
                errors=list(partial.get("errors") or []),
                extra=extra,
            )
        elif aspect in self.snapshot.providers:
            known = {"scraped", "confidence", "data", "strategy"}
            changes = {key: value for key, value in partial.items() if key in known}
            self.snapshot.providers[aspect] = replace(self.snapshot.providers[aspect], timestamp=now, **changes)
        else:
            raise AutocurateError(f"Unknown status aspect '{aspect}'")

        self.snapshot.last_update = now
        self._notify()

    def is_provider_scraped(self, provider_id: str) -> bool:
        status = self.snapshot.providers.get(provider_id)
        return bool(status and status.scraped)

    def get_completion_status(self) -> dict[str, Any]:
        total = len(self.providers) + 1
        completed = sum(1 for provider in self.providers if self.is_provider_scraped(provider.id))
        if self.snapshot.organized:
            completed += 1
        percentage = round(completed / total * 100)

        recommendations = [
            f"Scrape {provider.name} for metadata"
            for provider in self.providers
            if not self.is_provider_scraped(provider.id)
        ]
        if not self.snapshot.organized:
            recommendations.append("Mark scene as organized")

        return {
            "percentage": percentage,
            "completed": completed,
            "total": total,
            "status": "Complete" if percentage == 100 else f"{completed}/{total} completed",
            "recommendations": recommendations,
        }

    def get_status_summary(self) -> dict[str, Any]:
        snapshot = self.snapshot
        sources = {}
        for provider in self.providers:
            status = snapshot.providers.get(provider.id, ProviderStatus())
            sources[provider.id] = {
                "name": provider.name,
                "status": "Scraped" if status.scraped else "Not scraped",
                "scraped": status.scraped,
                "confidence": status.confidence,
                "strategy": status.strategy,
                "timestamp": status.timestamp,
            }
        automation = snapshot.last_automation
        return {
            "scene": {
                "id": snapshot.entity_id,
                "name": snapshot.scene_name
                or (f"Scene {snapshot.entity_id}" if snapshot.entity_id else "Unknown Scene"),
                "url": snapshot.url,
            },
            "sources": sources,
            "organized": {
                "status": "Organized" if snapshot.organized else "Not organized",
                "organized": snapshot.organized,
            },
            "automation": {
                "last_run": automation.timestamp if automation else None,
                "success": automation.success if automation else None,
                "sources_used": list(automation.sources_used) if automation else [],
                "errors": list(automation.errors) if automation else [],
            },
            "completion": self.get_completion_status(),
            "last_update": snapshot.last_update,
        }

    def on_status_update(self, callback: StatusCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove_status_update_callback(self, callback: StatusCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self) -> None:
        if not self._callbacks:
            return
        summary = self.get_status_summary()
        for callback in list(self._callbacks):
            try:
                callback(summary)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Status update callback %r failed", callback)

    def reset(self) -> None:
        self.snapshot = self._empty_snapshot()
        self._notify()
