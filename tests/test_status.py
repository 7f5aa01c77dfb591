"""Tests for status detection and tracking."""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, replace
from typing import Any, Dict, List

import httpx
import pytest

from autocurate.config import ProviderSettings, SelectorSettings
from autocurate.errors import AutocurateError
from autocurate.signals import RequestSignals
from autocurate.stash.client import StashClient
from autocurate.stash.models import Scene
from autocurate.status import (
    DetectionResult,
    DomStrategy,
    PageStrategy,
    ProtocolStrategy,
    StatusDetector,
    StatusTracker,
    menu_matches,
    run_cascade,
)
from autocurate.status.providers import provider_strategies
from autocurate.status.strategies import order_strategies

from .conftest import STASHDB_ENDPOINT, TPDB_ENDPOINT, FakeUIAdapter, GraphQLServer, make_scene

NOW = dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)


def _found(**data: Any) -> DetectionResult:
    return DetectionResult(found=True, data=data or None)


class TestCascade:
    def test_ordering_puts_protocol_first(self) -> None:
        async def validator(_: str) -> DetectionResult:
            return _found()

        strategies = [
            DomStrategy("dom_low", ".low", 80),
            PageStrategy("page_high", lambda ui: None, 99),
            ProtocolStrategy("graphql", validator, 100),
            DomStrategy("dom_high", ".high", 95),
        ]

        assert [item.name for item in order_strategies(strategies)] == ["graphql", "page_high", "dom_high", "dom_low"]

    @pytest.mark.asyncio
    async def test_first_positive_wins_and_is_stamped(self) -> None:
        ui = FakeUIAdapter()
        ui.elements[".low"] = "low-element"
        ui.elements[".high"] = "high-element"

        result = await run_cascade(
            [DomStrategy("low", ".low", 80), DomStrategy("high", ".high", 95)], ui=ui, entity_id="1"
        )

        assert result.found is True
        assert result.strategy == "high"
        assert result.confidence == 95

    @pytest.mark.asyncio
    async def test_failing_strategy_is_skipped(self) -> None:
        def explode(ui: Any) -> DetectionResult:
            raise RuntimeError("broken page")

        ui = FakeUIAdapter()
        ui.elements[".fallback"] = "element"

        result = await run_cascade(
            [PageStrategy("broken", explode, 99), DomStrategy("fallback", ".fallback", 50)], ui=ui, entity_id="1"
        )

        assert result.strategy == "fallback"

    @pytest.mark.asyncio
    async def test_nothing_found(self) -> None:
        result = await run_cascade([DomStrategy("missing", ".missing", 90)], ui=FakeUIAdapter(), entity_id="1")
        assert result.found is False
        assert result.confidence == 0

    @pytest.mark.asyncio
    async def test_protocol_results_are_cached(self) -> None:
        calls: List[str] = []

        async def validator(entity_id: str) -> DetectionResult:
            calls.append(entity_id)
            return _found()

        cache: Dict[Any, DetectionResult] = {}
        strategy = ProtocolStrategy("graphql", validator)
        await run_cascade([strategy], ui=None, entity_id="1", cache=cache)
        await run_cascade([strategy], ui=None, entity_id="1", cache=cache)
        await run_cascade([strategy], ui=None, entity_id="2", cache=cache)

        assert calls == ["1", "2"]

    @pytest.mark.asyncio
    async def test_page_strategies_need_an_adapter(self) -> None:
        result = await run_cascade([PageStrategy("page", lambda ui: _found(), 90)], ui=None, entity_id="1")
        assert result.found is False


class TestProviderStrategies:
    def test_configured_selectors_are_included(self, providers: List[ProviderSettings]) -> None:
        provider = providers[0]
        provider.selectors.append(SelectorSettings(selector=".stashdb-badge", confidence=92, name="badge"))

        names = [strategy.name for strategy in order_strategies(provider_strategies(provider))]

        assert names == ["stashdb_url", "badge", "stashdb_id", "stashdb_reference", "stashdb_metadata"]

    def test_menu_matches_uses_keywords(self, providers: List[ProviderSettings]) -> None:
        stashdb, tpdb = providers
        assert menu_matches(stashdb, "  Stash-Box: StashDB ")
        assert menu_matches(tpdb, "TPDB (metadataapi)")
        assert not menu_matches(stashdb, "ThePornDB")

    def test_menu_matches_falls_back_to_id_and_name(self) -> None:
        provider = ProviderSettings(id="fansdb", name="FansDB")
        assert menu_matches(provider, "Scrape with FansDB")


class TestStatusDetector:
    @pytest.mark.asyncio
    async def test_from_prefetched_scene(self, client: StashClient, providers) -> None:
        """A pre-fetched scene answers at confidence 100 without any request."""
        detector = StatusDetector(client, providers)
        scene = Scene.model_validate(make_scene("1", organized=True, endpoints=[STASHDB_ENDPOINT]))

        stashdb = await detector.detect_provider_data("stashdb", scene)
        tpdb = await detector.detect_provider_data("theporndb", scene)
        organized = await detector.detect_organized(scene)

        assert (stashdb.found, stashdb.confidence, stashdb.strategy) == (True, 100, "stashdb_graphql")
        assert stashdb.data["stash_ids"][0]["endpoint"] == STASHDB_ENDPOINT
        assert tpdb.found is False
        assert organized.organized is True

    @pytest.mark.asyncio
    async def test_graphql_validator_through_adapter(
        self, client: StashClient, server: GraphQLServer, providers
    ) -> None:
        server.add_scene(make_scene("1", endpoints=[TPDB_ENDPOINT]))
        detector = StatusDetector(client, providers, ui=FakeUIAdapter("1"))

        result = await detector.detect_provider_data("theporndb")

        assert result.found is True
        assert result.strategy == "theporndb_graphql"

    @pytest.mark.asyncio
    async def test_falls_back_to_page_when_api_fails(
        self, client: StashClient, server: GraphQLServer, providers
    ) -> None:
        server.handlers["FindScene"] = lambda _: httpx.Response(500)
        ui = FakeUIAdapter("1")
        ui.text = "Linked to stashdb.org/scenes/abc"
        detector = StatusDetector(client, providers, ui=ui)

        result = await detector.detect_provider_data("stashdb")

        assert result.found is True
        assert result.strategy == "stashdb_metadata"
        assert result.confidence == 75

    @pytest.mark.asyncio
    async def test_detection_is_idempotent(self, client: StashClient, server: GraphQLServer, providers) -> None:
        """Repeated detection with no mutation in between gives equal results from one request."""
        server.add_scene(make_scene("1", endpoints=[STASHDB_ENDPOINT]))
        detector = StatusDetector(client, providers, ui=FakeUIAdapter("1"))

        first = await detector.detect_provider_data("stashdb")
        second = await detector.detect_provider_data("stashdb")

        assert first == second
        assert server.count("FindScene") == 1

    @pytest.mark.asyncio
    async def test_mutation_signal_clears_validator_cache(
        self, client: StashClient, server: GraphQLServer, signals: RequestSignals, providers
    ) -> None:
        server.add_scene(make_scene("1"))
        detector = StatusDetector(client, providers, ui=FakeUIAdapter("1"), signals=signals)

        assert (await detector.detect_provider_data("stashdb")).found is False

        server.scenes["1"]["stash_ids"] = [{"endpoint": STASHDB_ENDPOINT, "stash_id": "x"}]
        signals.mutation_performed("sceneUpdate")

        assert (await detector.detect_provider_data("stashdb")).found is True

    @pytest.mark.asyncio
    async def test_organized_from_page_button(self, client: StashClient, server: GraphQLServer, providers) -> None:
        server.handlers["FindScene"] = lambda _: httpx.Response(500)
        ui = FakeUIAdapter("1")
        ui.elements['button[title="Organized"]'] = "organized-button"
        ui.active.add("organized-button")
        detector = StatusDetector(client, providers, ui=ui)

        result = await detector.detect_organized()

        assert result.organized is True
        assert result.strategy == "organized_button_title"

    @pytest.mark.asyncio
    async def test_organized_unknown_is_false(self, client: StashClient, providers) -> None:
        detector = StatusDetector(client, providers)
        result = await detector.detect_organized()
        assert result.found is False
        assert result.organized is False

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client: StashClient, providers) -> None:
        with pytest.raises(AutocurateError):
            await StatusDetector(client, providers).detect_provider_data("nope")


def _tracker(client: StashClient, providers, ui=None) -> StatusTracker:
    return StatusTracker(client, StatusDetector(client, providers, ui=ui), providers, ui=ui, clock=lambda: NOW)


class TestStatusTracker:
    @pytest.mark.asyncio
    async def test_detect_current_status(self, client: StashClient, server: GraphQLServer, providers) -> None:
        server.add_scene(
            make_scene(
                "1", title="Sample", organized=False, endpoints=[STASHDB_ENDPOINT], updated_at="2024-05-01T10:00:00Z"
            )
        )
        tracker = _tracker(client, providers, FakeUIAdapter("1"))

        snapshot = await tracker.detect_current_status()

        assert snapshot.entity_id == "1"
        assert snapshot.scene_name == "Sample"
        assert snapshot.providers["stashdb"].scraped is True
        assert snapshot.providers["stashdb"].timestamp == dt.datetime(2024, 5, 1, 10, tzinfo=dt.timezone.utc)
        assert snapshot.providers["theporndb"].timestamp is None
        assert snapshot.providers["theporndb"].scraped is False
        assert snapshot.organized is False
        assert server.count("FindScene") == 1

    @pytest.mark.asyncio
    async def test_redetection_gives_equal_snapshots(
        self, client: StashClient, server: GraphQLServer, providers
    ) -> None:
        """Two passes with no mutation between them differ only in last_update."""
        server.add_scene(make_scene("1", endpoints=[STASHDB_ENDPOINT], updated_at="2024-05-01T10:00:00Z"))
        moments = iter([NOW, NOW + dt.timedelta(seconds=5)])
        tracker = StatusTracker(
            client, StatusDetector(client, providers), providers, clock=lambda: next(moments)
        )

        first = await tracker.detect_current_status("1")
        second = await tracker.detect_current_status("1")

        assert first.last_update != second.last_update
        assert asdict(replace(first, last_update=None)) == asdict(replace(second, last_update=None))

    @pytest.mark.asyncio
    async def test_completion_and_recommendations(
        self, client: StashClient, server: GraphQLServer, providers
    ) -> None:
        server.add_scene(make_scene("1", endpoints=[STASHDB_ENDPOINT]))
        tracker = _tracker(client, providers)

        await tracker.detect_current_status("1")
        completion = tracker.get_completion_status()

        assert completion["completed"] == 1
        assert completion["total"] == 3
        assert completion["percentage"] == 33
        assert completion["recommendations"] == ["Scrape ThePornDB for metadata", "Mark scene as organized"]

    @pytest.mark.asyncio
    async def test_complete_scene(self, client: StashClient, server: GraphQLServer, providers) -> None:
        server.add_scene(make_scene("1", organized=True, endpoints=[STASHDB_ENDPOINT, TPDB_ENDPOINT]))
        tracker = _tracker(client, providers)

        await tracker.detect_current_status("1")

        assert tracker.get_completion_status()["status"] == "Complete"

    @pytest.mark.asyncio
    async def test_last_automation_survives_redetection(
        self, client: StashClient, server: GraphQLServer, providers
    ) -> None:
        server.add_scene(make_scene("1"))
        tracker = _tracker(client, providers)
        tracker.update_status("automation", {"success": True, "sources_used": ["stashdb"], "outcome": "success"})

        await tracker.detect_current_status("1")

        assert tracker.snapshot.last_automation is not None
        assert tracker.snapshot.last_automation.sources_used == ["stashdb"]
        assert tracker.snapshot.last_automation.extra == {"outcome": "success"}

    def test_update_provider_and_organized(self, client: StashClient, providers) -> None:
        tracker = _tracker(client, providers)

        tracker.update_status("stashdb", {"scraped": True, "confidence": 100, "ignored": 1})
        tracker.update_status("organized", {"organized": True})

        assert tracker.is_provider_scraped("stashdb")
        assert tracker.snapshot.providers["stashdb"].confidence == 100
        assert tracker.snapshot.organized is True
        assert tracker.snapshot.last_update == NOW

    def test_unknown_aspect(self, client: StashClient, providers) -> None:
        with pytest.raises(AutocurateError):
            _tracker(client, providers).update_status("imdb", {})

    def test_failing_callback_is_isolated(self, client: StashClient, providers) -> None:
        """One broken observer never prevents the others from being told."""
        tracker = _tracker(client, providers)
        received: List[dict] = []

        def broken(summary: dict) -> None:
            raise RuntimeError("observer bug")

        tracker.on_status_update(broken)
        tracker.on_status_update(received.append)
        tracker.update_status("organized", {"organized": True})

        assert len(received) == 1
        assert received[0]["organized"]["organized"] is True

    def test_remove_callback(self, client: StashClient, providers) -> None:
        tracker = _tracker(client, providers)
        received: List[dict] = []
        tracker.on_status_update(received.append)
        tracker.remove_status_update_callback(received.append)

        tracker.update_status("organized", {"organized": True})

        assert received == []

    def test_summary_shape(self, client: StashClient, providers) -> None:
        summary = _tracker(client, providers).get_status_summary()

        assert summary["scene"]["name"] == "Unknown Scene"
        assert summary["sources"]["stashdb"]["status"] == "Not scraped"
        assert summary["organized"]["status"] == "Not organized"
        assert summary["automation"]["last_run"] is None
