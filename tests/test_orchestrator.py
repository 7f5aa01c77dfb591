"""End-to-end tests for one automation run against the in-memory page and server."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List, Optional

import httpx
import pytest

from autocurate.config import AutomationSettings, ProviderSettings
from autocurate.errors import AutocurateError, AutomationBusyError
from autocurate.notifications import NotificationService, NotificationTarget, RunNotification
from autocurate.orchestrator import AutomationOrchestrator, ProviderRunStatus, RunOutcome
from autocurate.persistence import HistoryStore, StateStore
from autocurate.prompts import ApplyChoice, AutoPrompter, Prompter
from autocurate.routing import SourceRouter
from autocurate.scraped_data import ScrapedData
from autocurate.signals import RequestEvent, RequestSignals
from autocurate.stash.client import StashClient
from autocurate.status import StatusDetector, StatusTracker
from autocurate.thumbnails import ThumbnailInspector
from autocurate.ui_adapter import TIMEOUT_REASON

from .conftest import (
    FOUND,
    STASH_URL,
    STASHDB_ENDPOINT,
    TPDB_ENDPOINT,
    FakeUIAdapter,
    GraphQLServer,
    make_scene,
    png_bytes,
)


class RecordingTarget(NotificationTarget):
    name = "recording"

    def __init__(self) -> None:
        self.events: List[RunNotification] = []

    async def send(self, event: RunNotification) -> None:
        self.events.append(event)


class Harness:
    def __init__(
        self,
        client: StashClient,
        signals: RequestSignals,
        history: HistoryStore,
        providers: List[ProviderSettings],
        settings: AutomationSettings,
        ui: FakeUIAdapter,
        *,
        prompter: Optional[Prompter] = None,
        router: Optional[SourceRouter] = None,
        thumbnails: Optional[ThumbnailInspector] = None,
    ) -> None:
        self.ui = ui
        self.history = history
        self.notifications = RecordingTarget()
        detector = StatusDetector(client, providers, ui=ui, signals=signals)
        self.tracker = StatusTracker(client, detector, providers, ui=ui)
        self.orchestrator = AutomationOrchestrator(
            ui=ui,
            client=client,
            tracker=self.tracker,
            history=history,
            settings=settings,
            providers=providers,
            signals=signals,
            router=router,
            prompter=prompter or AutoPrompter(),
            notifier=NotificationService([self.notifications]),
            thumbnails=thumbnails,
        )

    async def run(self, **kwargs):
        return await self.orchestrator.run(**kwargs)


@pytest.fixture
def harness(client, signals, history, providers, fast_settings):
    def build(ui: FakeUIAdapter, *, settings: Optional[AutomationSettings] = None, **kwargs) -> Harness:
        return Harness(client, signals, history, providers, settings or fast_settings, ui, **kwargs)

    return build


class TestSatisfiedScene:
    @pytest.mark.asyncio
    async def test_nothing_to_scrape(self, harness, server: GraphQLServer) -> None:
        """A scene already linked to every provider and organized needs no scraping."""
        server.add_scene(make_scene("1", organized=True, endpoints=[STASHDB_ENDPOINT, TPDB_ENDPOINT]))
        ui = FakeUIAdapter("1")
        run = harness(ui)

        result = await run.run()

        assert result.outcome is RunOutcome.SUCCESS
        assert ui.scrapes == []
        assert result.sources_used == []
        assert [item.status for item in result.providers] == [ProviderRunStatus.NOT_NEEDED] * 2
        assert result.organized is True
        assert ui.organize_toggles == 0

    @pytest.mark.asyncio
    async def test_forced_provider_is_scraped_again(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1", organized=True, endpoints=[STASHDB_ENDPOINT, TPDB_ENDPOINT]))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND})

        result = await harness(ui).run(force=["stashdb"])

        assert ui.scrapes == ["stashdb"]
        assert result.sources_used == ["stashdb"]


class TestScrapeApplyOrganize:
    @pytest.mark.asyncio
    async def test_full_run(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1", title="Unsorted"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": FOUND})
        run = harness(ui)

        result = await run.run()

        assert result.outcome is RunOutcome.SUCCESS
        assert result.scene_name == "Unsorted"
        assert ui.scrapes == ["stashdb", "theporndb"]
        assert result.sources_used == ["stashdb", "theporndb"]
        assert ui.clicks.count("apply-button") == 2
        assert ui.clicks.count("save-button") == 2
        assert ui.organize_toggles == 1
        assert result.organized is True
        assert ui.restored == 1
        assert "stashdb.scrape" in result.timing

    @pytest.mark.asyncio
    async def test_history_tracker_and_notification(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1", title="Unsorted"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": FOUND})
        run = harness(ui)

        await run.run()

        entry = run.history.get_last_automation("1")
        assert entry is not None
        assert entry.success is True
        assert entry.sources_used == ("stashdb", "theporndb")
        assert entry.url == f"{STASH_URL}/scenes/1"
        assert entry.metadata["organized"] is True
        assert entry.metadata["stashdb"] is True
        assert run.tracker.snapshot.last_automation.success is True
        assert [event.outcome for event in run.notifications.events] == ["success"]

    @pytest.mark.asyncio
    async def test_save_acknowledged_by_mutation(
        self, harness, server: GraphQLServer, signals: RequestSignals
    ) -> None:
        """A save that produces its own mutation event is not announced a second time."""
        server.add_scene(make_scene("1", organized=True, endpoints=[STASHDB_ENDPOINT, TPDB_ENDPOINT]))
        ui = FakeUIAdapter("1")
        ui.on_click = lambda element: signals.mutation_performed("ui-save") if element == "save-button" else None
        mutations: List[RequestEvent] = []
        signals.subscribe("mutation", mutations.append)

        await harness(ui).run()

        assert [event.operation for event in mutations] == ["ui-save"]

    @pytest.mark.asyncio
    async def test_missing_linked_entities_are_created(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND})
        ui.create_affordances = ["create-performer", "create-studio"]

        def click(element) -> None:
            if element in ui.create_affordances:
                ui.create_affordances.remove(element)

        ui.on_click = click

        result = await harness(ui).run()

        assert result.entities_created == 2

    @pytest.mark.asyncio
    async def test_auto_scrape_disabled(self, harness, server: GraphQLServer, providers) -> None:
        server.add_scene(make_scene("1"))
        providers[1].auto_scrape = False
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND})

        result = await harness(ui).run()

        assert ui.scrapes == ["stashdb"]
        assert result.provider("theporndb").reason == "auto-scrape disabled"
        assert result.organized is False


class TestProviderOutcomes:
    @pytest.mark.asyncio
    async def test_no_match_skips_provider_and_blocks_organize(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": "No matches found.", "theporndb": FOUND})
        run = harness(ui)

        result = await run.run()

        stashdb = result.provider("stashdb")
        assert stashdb.status is ProviderRunStatus.SKIPPED
        assert stashdb.reason == "no matches found."
        assert result.sources_used == ["theporndb"]
        assert result.outcome is RunOutcome.SUCCESS
        assert result.organized is False
        assert ui.organize_toggles == 0
        assert run.history.get_last_automation("1").metadata["skippedSources"] == ["stashdb"]

    @pytest.mark.asyncio
    async def test_silence_times_out(self, harness, server: GraphQLServer, fast_settings) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"theporndb": FOUND})

        result = await harness(ui, settings=replace(fast_settings, outcome_timeout=0.05)).run()

        assert result.provider("stashdb").reason == TIMEOUT_REASON

    @pytest.mark.asyncio
    async def test_adapter_specific_error_skips_only_that_provider(self, harness, server: GraphQLServer) -> None:
        """An adapter raising its own exception type costs one provider, not the run."""
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": FOUND})

        def driver_failure(provider: ProviderSettings) -> None:
            if provider.id == "stashdb":
                raise RuntimeError("driver lost the page")

        ui.on_scrape = driver_failure

        result = await harness(ui).run()

        assert result.outcome is RunOutcome.SUCCESS
        assert result.provider("stashdb").status is ProviderRunStatus.SKIPPED
        assert result.provider("stashdb").reason == "driver lost the page"
        assert result.sources_used == ["theporndb"]
        assert "StashDB: driver lost the page" in result.errors

    @pytest.mark.asyncio
    async def test_any_provider_may_be_enough_to_organize(
        self, harness, server: GraphQLServer, fast_settings
    ) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": "No results", "theporndb": FOUND})
        settings = replace(fast_settings, organize_requires_all_providers=False)

        result = await harness(ui, settings=settings).run()

        assert result.organized is True

    @pytest.mark.asyncio
    async def test_router_records_observed_outcomes(
        self, harness, server: GraphQLServer, state: StateStore
    ) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": "Nothing found"})
        router = SourceRouter(state, enabled=True)

        await harness(ui, router=router).run()

        stats = router.stats()
        assert (stats["stashdb"].success, stats["stashdb"].fail) == (1, 0)
        assert (stats["theporndb"].success, stats["theporndb"].fail) == (0, 1)

    @pytest.mark.asyncio
    async def test_thumbnail_decision_is_recorded(
        self, harness, server: GraphQLServer, fast_settings, history: HistoryStore
    ) -> None:
        server.add_scene(make_scene("1"))
        server.images["/current.png"] = png_bytes(100, 100)
        server.images["/scraped.png"] = png_bytes(150, 150)
        ui = FakeUIAdapter(
            "1",
            outcomes={"stashdb": FOUND},
            scraped={"stashdb": ScrapedData(title="Cover", thumbnail=f"{STASH_URL}/scraped.png")},
        )
        ui.thumbnail_url = f"{STASH_URL}/current.png"
        settings = replace(fast_settings, prefer_higher_res_thumbnails=True, outcome_timeout=0.05)

        async with httpx.AsyncClient(transport=server.transport) as http:
            await harness(ui, settings=settings, thumbnails=ThumbnailInspector(http)).run()

        assert history.get_last_automation("1").metadata["thumbnails"] == {"stashdb": "scraped"}
        assert ui.kept_thumbnails == 0

    @pytest.mark.asyncio
    async def test_smaller_scraped_cover_keeps_the_current_one(
        self, harness, server: GraphQLServer, fast_settings, history: HistoryStore
    ) -> None:
        server.add_scene(make_scene("1"))
        server.images["/current.png"] = png_bytes(200, 200)
        server.images["/scraped.png"] = png_bytes(100, 100)
        ui = FakeUIAdapter(
            "1",
            outcomes={"stashdb": FOUND},
            scraped={"stashdb": ScrapedData(title="Cover", thumbnail=f"{STASH_URL}/scraped.png")},
        )
        ui.thumbnail_url = f"{STASH_URL}/current.png"
        settings = replace(fast_settings, prefer_higher_res_thumbnails=True, outcome_timeout=0.05)

        async with httpx.AsyncClient(transport=server.transport) as http:
            result = await harness(ui, settings=settings, thumbnails=ThumbnailInspector(http)).run()

        assert result.provider("stashdb").status is ProviderRunStatus.APPLIED
        assert ui.kept_thumbnails == 1
        assert history.get_last_automation("1").metadata["thumbnails"] == {"stashdb": "current"}


class TestUserDecisions:
    @pytest.mark.asyncio
    async def test_cancel_at_apply_prompt(self, harness, server: GraphQLServer, fast_settings) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": FOUND})
        settings = replace(fast_settings, auto_apply=False)
        run = harness(ui, settings=settings, prompter=AutoPrompter(ApplyChoice.CANCEL))

        result = await run.run()

        assert result.outcome is RunOutcome.CANCELLED
        assert result.provider("stashdb").status is ProviderRunStatus.CANCELLED
        assert ui.scrapes == ["stashdb"]
        assert "save-button" not in ui.clicks
        assert ui.restored == 1
        entry = run.history.get_last_automation("1")
        assert entry.cancelled is True
        assert entry.success is False
        assert run.orchestrator.in_progress is False

    @pytest.mark.asyncio
    async def test_skip_at_apply_prompt(self, harness, server: GraphQLServer, fast_settings) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND, "theporndb": FOUND})
        settings = replace(fast_settings, auto_apply=False)

        result = await harness(ui, settings=settings, prompter=AutoPrompter(ApplyChoice.SKIP)).run()

        assert result.outcome is RunOutcome.SUCCESS
        assert {item.reason for item in result.providers} == {"skipped by user"}
        assert result.sources_used == []
        assert "apply-button" not in ui.clicks

    @pytest.mark.asyncio
    async def test_low_score_asks_before_applying(self, harness, server: GraphQLServer, fast_settings) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND})
        settings = replace(fast_settings, min_auto_apply_score=90)
        asked: List[str] = []

        class Recording(AutoPrompter):
            async def choose_apply(self, summary: str) -> ApplyChoice:
                asked.append(summary)
                return ApplyChoice.APPLY

        result = await harness(ui, settings=settings, prompter=Recording()).run()

        assert len(asked) == 1
        assert "Scraped Title" in asked[0]
        assert result.sources_used == ["stashdb"]

    @pytest.mark.asyncio
    async def test_skip_current_source(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"theporndb": FOUND})
        run = harness(ui)
        ui.on_scrape = lambda provider: run.orchestrator.skip_current_source() if provider.id == "stashdb" else None

        result = await run.run()

        assert result.provider("stashdb").reason == "user skipped"
        assert result.sources_used == ["theporndb"]
        assert result.outcome is RunOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1")
        run = harness(ui)
        ui.on_scrape = lambda provider: run.orchestrator.cancel()

        result = await run.run()

        assert result.outcome is RunOutcome.CANCELLED
        assert result.provider("stashdb").status is ProviderRunStatus.CANCELLED
        assert ui.scrapes == ["stashdb"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_navigation_away_fails_the_run(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1", outcomes={"stashdb": FOUND})
        ui.on_scrape = lambda provider: ui.navigate("2")
        run = harness(ui)

        result = await run.run()

        assert result.outcome is RunOutcome.FAILURE
        assert result.errors == [f"Navigated away from scene 1 (now on {STASH_URL}/scenes/2)"]
        assert ui.scrapes == ["stashdb"]
        assert run.history.get_last_automation("1").success is False
        assert [event.outcome for event in run.notifications.events] == ["failure"]

    @pytest.mark.asyncio
    async def test_missing_save_control(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1")
        ui.save_button = None

        result = await harness(ui, settings=None).run()

        assert result.outcome is RunOutcome.FAILURE
        assert result.errors[-1] == "Save control not found"

    @pytest.mark.asyncio
    async def test_edit_panel_that_will_not_open(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1")
        ui.can_open_edit = False

        result = await harness(ui).run()

        assert result.outcome is RunOutcome.FAILURE
        assert ui.scrapes == []

    @pytest.mark.asyncio
    async def test_no_scene_open(self, harness) -> None:
        with pytest.raises(AutocurateError):
            await harness(FakeUIAdapter(None)).run()

    @pytest.mark.asyncio
    async def test_second_run_while_busy(self, harness, server: GraphQLServer) -> None:
        server.add_scene(make_scene("1"))
        ui = FakeUIAdapter("1")
        run = harness(ui)

        first = asyncio.create_task(run.run())
        await asyncio.sleep(0.05)
        with pytest.raises(AutomationBusyError):
            await run.run()
        result = await first

        assert result.outcome is RunOutcome.SUCCESS
