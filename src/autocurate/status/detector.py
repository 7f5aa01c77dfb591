"""Determines whether a scene already carries provider data or is organized."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..config import ProviderSettings
from ..errors import AutocurateError
from ..signals import RequestEvent, RequestSignals
from ..stash.models import Scene
from .providers import ORGANIZED_ASPECT, organized_strategies, provider_strategies
from .strategies import DetectionResult, DomStrategy, ProtocolCache, ProtocolStrategy, Strategy, run_cascade

if TYPE_CHECKING:
    from ..stash.client import StashClient
    from ..ui_adapter import UIAdapter

LOGGER = logging.getLogger(__name__)

SNAPSHOT_CONFIDENCE = 100


def _provider_data(scene: Scene, provider: ProviderSettings) -> dict[str, Any]:
    return {
        "stash_ids": [item.model_dump() for item in scene.stash_ids_for(provider.endpoint_markers)],
        "scene_id": scene.id,
        "scene_title": scene.title,
        "last_updated": scene.updated_at,
    }


def provider_result_from_scene(scene: Scene, provider: ProviderSettings) -> DetectionResult:
    ids = scene.stash_ids_for(provider.endpoint_markers)
    return DetectionResult(
        found=bool(ids),
        confidence=SNAPSHOT_CONFIDENCE,
        data=_provider_data(scene, provider),
        strategy=f"{provider.id}_graphql",
    )


def organized_result_from_scene(scene: Scene) -> DetectionResult:
    return DetectionResult(
        found=True,
        organized=scene.organized,
        confidence=SNAPSHOT_CONFIDENCE,
        data={"scene_id": scene.id, "scene_title": scene.title, "organized": scene.organized},
        strategy="organized_graphql",
    )


class StatusDetector:
    """Confidence cascade per provider plus one for the organized flag.

    With a pre-fetched scene every answer comes straight from the scene at
    confidence 100. Without one, the GraphQL validator runs first (cached per
    scene until the next mutation signal), then the page strategies.
    """

    def __init__(
        self,
        client: StashClient,
        providers: list[ProviderSettings],
        *,
        ui: UIAdapter | None = None,
        signals: RequestSignals | None = None,
    ) -> None:
        self.client = client
        self.providers = {provider.id: provider for provider in providers}
        self.ui = ui
        self._cache: ProtocolCache = {}
        self._strategies: dict[str, list[Strategy]] = {
            provider.id: [self._provider_validator(provider), *provider_strategies(provider)] for provider in providers
        }
        self._strategies[ORGANIZED_ASPECT] = [
            ProtocolStrategy("organized_graphql", self._validate_organized, 100),
            *organized_strategies(),
        ]
        if signals is not None:
            signals.subscribe("mutation", self._on_mutation)

    def _on_mutation(self, _event: RequestEvent) -> None:
        self.clear_cache()

    def clear_cache(self) -> None:
        self._cache.clear()

    def _current_entity_id(self) -> str | None:
        return self.ui.current_entity_id() if self.ui is not None else None

    def _provider_validator(self, provider: ProviderSettings) -> ProtocolStrategy:
        async def validate(scene_id: str) -> DetectionResult:
            scene = await self.client.get_scene_cached(scene_id)
            if scene is None:
                return DetectionResult(found=False, reason="scene not found")
            return provider_result_from_scene(scene, provider)

        return ProtocolStrategy(f"{provider.id}_graphql", validate, 100)

    async def _validate_organized(self, scene_id: str) -> DetectionResult:
        scene = await self.client.get_scene_cached(scene_id)
        if scene is None:
            return DetectionResult(found=False, reason="scene not found")
        return organized_result_from_scene(scene)

    def _read_organized_element(self, ui: UIAdapter, element: Any, strategy: DomStrategy) -> DetectionResult:
        return DetectionResult(found=True, organized=ui.is_element_active(element), data={"selector": strategy.selector})

    async def detect_provider_data(self, provider_id: str, scene: Scene | None = None) -> DetectionResult:
        provider = self.providers.get(provider_id)
        if provider is None:
            raise AutocurateError(f"Unknown provider '{provider_id}'")
        if scene is not None:
            return provider_result_from_scene(scene, provider)
        return await run_cascade(
            self._strategies[provider_id],
            ui=self.ui,
            entity_id=self._current_entity_id(),
            cache=self._cache,
        )

    async def detect_organized(self, scene: Scene | None = None) -> DetectionResult:
        if scene is not None:
            return organized_result_from_scene(scene)
        result = await run_cascade(
            self._strategies[ORGANIZED_ASPECT],
            ui=self.ui,
            entity_id=self._current_entity_id(),
            cache=self._cache,
            read_element=self._read_organized_element,
        )
        if not result.found:
            return DetectionResult(found=False, confidence=0, organized=False)
        return result
