"""Drives one automation run over the scene open in the UI."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .cancellation import CancellationToken
from .config import AutomationSettings, ProviderSettings
from .errors import (
    AutocurateError,
    AutomationBusyError,
    AutomationCancelled,
    NavigationError,
    SourceSkipped,
    truncate_error,
)
from .logging_utils import render_fields_block
from .notifications import LoggingTarget, NotificationService, Notifier, RunNotification
from .persistence.history_store import RunRecord
from .prompts import ApplyChoice, ConsolePrompter, Prompter
from .scraped_data import score_scraped_data, summarize_scraped_data
from .session_state import RescrapeOptions, RunState, SessionState
from .signals import RequestSignals
from .status.providers import ORGANIZED_ASPECT
from .status.tracker import AUTOMATION_ASPECT
from .ui_adapter import DEFAULT_VOCABULARY, OutcomeVocabulary

if TYPE_CHECKING:
    from .persistence.history_store import HistoryStore
    from .routing import SourceRouter
    from .stash.client import StashClient
    from .status.tracker import StatusTracker
    from .thumbnails import ThumbnailInspector
    from .ui_adapter import UIAdapter

LOGGER = logging.getLogger(__name__)

FULL_CONFIDENCE = 100


class RunOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class ProviderRunStatus(str, enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    NOT_NEEDED = "not_needed"
    CANCELLED = "cancelled"


@dataclass
class ProviderResult:
    provider_id: str
    status: ProviderRunStatus
    reason: str | None = None
    found: bool = False


@dataclass
class RunResult:
    scene_id: str
    outcome: RunOutcome
    scene_name: str | None = None
    providers: list[ProviderResult] = field(default_factory=list)
    sources_used: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    organized: bool = False
    duration_ms: int = 0
    timing: dict[str, int] = field(default_factory=dict)
    entities_created: int = 0

    @property
    def success(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    def provider(self, provider_id: str) -> ProviderResult | None:
        return next((result for result in self.providers if result.provider_id == provider_id), None)


@dataclass
class _RunContext:
    scene_id: str
    location: str | None
    token: CancellationToken
    scene_name: str | None = None
    already_scraped: dict[str, bool] = field(default_factory=dict)
    results: list[ProviderResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timing: dict[str, float] = field(default_factory=dict)
    entities_created: int = 0
    organized: bool = False
    thumbnails: dict[str, str] = field(default_factory=dict)


class AutomationOrchestrator:
    """Runs the scrape, apply, save and organize sequence for one scene.

    Providers are processed strictly one after another. Every suspension
    point checks the run's :class:`CancellationToken` and that the UI is still
    on the scene the run started on. Provider failures only skip that
    provider; save and organize failures fail the run. History, tracker and
    notification bookkeeping happen whatever the outcome.
    """

    def __init__(
        self,
        *,
        ui: UIAdapter,
        client: StashClient,
        tracker: StatusTracker,
        history: HistoryStore,
        settings: AutomationSettings,
        providers: list[ProviderSettings],
        signals: RequestSignals | None = None,
        router: SourceRouter | None = None,
        prompter: Prompter | None = None,
        notifier: Notifier | None = None,
        thumbnails: ThumbnailInspector | None = None,
        vocabulary: OutcomeVocabulary = DEFAULT_VOCABULARY,
    ) -> None:
        self.ui = ui
        self.client = client
        self.tracker = tracker
        self.history = history
        self.settings = settings
        self.providers = list(providers)
        self.signals = signals or client.signals
        self.router = router
        self.prompter = prompter or ConsolePrompter()
        self.notifier = notifier or NotificationService([LoggingTarget()])
        self.thumbnails = thumbnails
        self.vocabulary = vocabulary
        self.session = SessionState()

    @staticmethod
    def _format_log(event: str, fields: Mapping[str, object] | None = None) -> str:
        return render_fields_block(event, fields or {}, pad_top=True)

    @property
    def in_progress(self) -> bool:
        return self.session.in_progress

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self.session.token is not None:
            self.session.token.cancel(reason)

    def skip_current_source(self) -> None:
        if self.session.token is not None:
            self.session.token.request_skip()

    async def run(self, *, force: Iterable[str] = ()) -> RunResult:
        """Run automation on the scene currently open in the UI.

        ``force`` names providers to scrape again even when already satisfied.

        Raises:
            AutomationBusyError: Another run is still in progress.
            AutocurateError: No scene is open.
        """
        if self.session.in_progress:
            raise AutomationBusyError("Automation is already running")
        scene_id = self.ui.current_entity_id()
        if not scene_id:
            raise AutocurateError("No scene is open in the UI")

        token = self.session.start(RescrapeOptions(set(force)))
        ctx = _RunContext(scene_id=scene_id, location=self.ui.current_location(), token=token)
        started = time.monotonic()
        LOGGER.info(self._format_log("Automation Started", {"Scene": scene_id, "Location": ctx.location}))

        try:
            outcome = await self._execute_guarded(ctx)
            result = self._build_result(ctx, outcome, started)
            self._record(ctx, result)
            await self._notify(result)
        finally:
            self.session.reset()
            self.ui.restore_controls()

        await self._refresh_status(scene_id)
        return result

    async def _execute_guarded(self, ctx: _RunContext) -> RunOutcome:
        try:
            await self._execute(ctx)
        except AutomationCancelled as exc:
            LOGGER.warning("Automation cancelled for scene %s: %s", ctx.scene_id, exc)
            return RunOutcome.CANCELLED
        except NavigationError as exc:
            LOGGER.error("Automation aborted for scene %s: %s", ctx.scene_id, exc)
            ctx.errors.append(truncate_error(exc))
            return RunOutcome.FAILURE
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Automation failed for scene %s: %s", ctx.scene_id, exc)
            LOGGER.debug("Automation failure detail", exc_info=True)
            ctx.errors.append(truncate_error(exc) or type(exc).__name__)
            return RunOutcome.FAILURE
        return RunOutcome.SUCCESS

    @contextmanager
    def _timed(self, ctx: _RunContext, step: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        finally:
            ctx.timing[step] = ctx.timing.get(step, 0.0) + (time.monotonic() - started) * 1000

    def _ensure_same_scene(self, ctx: _RunContext) -> None:
        current_id = self.ui.current_entity_id()
        current_location = self.ui.current_location()
        if current_id != ctx.scene_id or current_location != ctx.location:
            raise NavigationError(ctx.scene_id, current_location or current_id)

    def _checkpoint(self, ctx: _RunContext, *, allow_skip: bool = True) -> None:
        ctx.token.check(allow_skip=allow_skip)
        self._ensure_same_scene(ctx)

    async def _execute(self, ctx: _RunContext) -> None:
        self.session.transition(RunState.OPENING_EDIT_CONTEXT)
        with self._timed(ctx, "open_edit_context"):
            if not self.ui.is_edit_context_open() and not await self.ui.open_edit_context():
                raise AutocurateError("Could not open the edit panel")
        self._checkpoint(ctx, allow_skip=False)

        self.session.transition(RunState.CHECKING_STATUS)
        with self._timed(ctx, "check_status"):
            snapshot = await self.tracker.detect_current_status(ctx.scene_id)
        ctx.scene_name = snapshot.scene_name
        self._checkpoint(ctx, allow_skip=False)

        needed = self._plan_providers(ctx)
        ordered = self.router.order(needed) if self.router is not None else needed
        if not ordered:
            LOGGER.info("All providers already satisfied for scene %s", ctx.scene_id)
        else:
            LOGGER.info("Provider order: %s", " -> ".join(provider.id for provider in ordered))

        for provider in ordered:
            ctx.results.append(await self._run_provider(ctx, provider))

        self._checkpoint(ctx, allow_skip=False)
        self.session.transition(RunState.SAVING)
        with self._timed(ctx, "save"):
            await self._save(ctx)

        if self.settings.auto_organize:
            await self._organize_if_complete(ctx)
        self.session.transition(RunState.FINALIZING)

    def _plan_providers(self, ctx: _RunContext) -> list[ProviderSettings]:
        needed: list[ProviderSettings] = []
        for provider in self.providers:
            status = self.tracker.snapshot.providers.get(provider.id)
            already = bool(status and status.scraped and status.confidence >= FULL_CONFIDENCE)
            ctx.already_scraped[provider.id] = already
            forced = self.session.rescrape.is_forced(provider.id)

            if forced:
                needed.append(provider)
            elif already and self.settings.skip_already_scraped:
                ctx.results.append(ProviderResult(provider.id, ProviderRunStatus.NOT_NEEDED, "already scraped"))
            elif not provider.auto_scrape:
                ctx.results.append(ProviderResult(provider.id, ProviderRunStatus.NOT_NEEDED, "auto-scrape disabled"))
            else:
                needed.append(provider)
        return needed

    async def _run_provider(self, ctx: _RunContext, provider: ProviderSettings) -> ProviderResult:
        try:
            return await self._process_provider(ctx, provider)
        except (AutomationCancelled, NavigationError):
            raise
        except SourceSkipped as exc:
            ctx.token.consume_skip()
            LOGGER.info("Skipped %s: %s", provider.name, exc)
            return ProviderResult(provider.id, ProviderRunStatus.SKIPPED, "user skipped")
        except Exception as exc:  # noqa: BLE001
            reason = truncate_error(exc) or type(exc).__name__
            LOGGER.debug("Provider %s failure detail", provider.id, exc_info=True)
            LOGGER.warning(self._format_log("Provider Failed", {"Provider": provider.name, "Reason": reason}))
            ctx.errors.append(truncate_error(f"{provider.name}: {reason}"))
            return ProviderResult(provider.id, ProviderRunStatus.SKIPPED, reason)

    async def _process_provider(self, ctx: _RunContext, provider: ProviderSettings) -> ProviderResult:
        self.session.transition(RunState.SCRAPING, provider.id)
        self._checkpoint(ctx)
        with self._timed(ctx, f"{provider.id}.scrape"):
            await self.ui.trigger_scrape(provider)
            outcome = await self.ui.detect_outcome(self.settings.outcome_timeout, self.vocabulary, ctx.token)
        if self.router is not None:
            self.router.record_outcome(provider.id, outcome.found)
        self._checkpoint(ctx)

        if not outcome.found:
            self.session.transition(RunState.SKIP_PROVIDER, provider.id)
            LOGGER.info("No %s match: %s", provider.name, outcome.reason or "no match")
            return ProviderResult(provider.id, ProviderRunStatus.SKIPPED, outcome.reason or "no match")

        if self.settings.auto_create_entities:
            self.session.transition(RunState.CREATING_ENTITIES, provider.id)
            with self._timed(ctx, f"{provider.id}.create_entities"):
                ctx.entities_created += await self._create_entities(ctx)
            self._checkpoint(ctx)

        self.session.transition(RunState.APPLYING, provider.id)
        with self._timed(ctx, f"{provider.id}.apply"):
            return await self._apply(ctx, provider)

    async def _create_entities(self, ctx: _RunContext) -> int:
        created = 0
        for affordance in self.ui.find_create_affordances():
            self._checkpoint(ctx)
            await self.ui.click_element(affordance)
            created += 1
            await ctx.token.sleep(self.settings.create_settle_delay)
        if created:
            LOGGER.info("Created %d missing linked entities", created)
        return created

    async def _apply(self, ctx: _RunContext, provider: ProviderSettings) -> ProviderResult:
        data = await self.ui.collect_scraped_data()
        thumbnail_note = None
        if self.settings.prefer_higher_res_thumbnails and self.thumbnails is not None and data.thumbnail:
            comparison = await self.thumbnails.compare(self.ui.current_thumbnail_url(), data.thumbnail)
            thumbnail_note = comparison.reason
            ctx.thumbnails[provider.id] = "scraped" if comparison.should_update else "current"
        self._checkpoint(ctx)

        score = score_scraped_data(data)
        if not (self.settings.auto_apply and score >= self.settings.min_auto_apply_score):
            summary = summarize_scraped_data(data, provider_name=provider.name, thumbnail_note=thumbnail_note)
            choice = await self.prompter.choose_apply(summary)
            if choice is ApplyChoice.CANCEL:
                ctx.token.cancel("cancelled by user")
                ctx.results.append(ProviderResult(provider.id, ProviderRunStatus.CANCELLED, "cancelled by user", True))
                raise AutomationCancelled("cancelled by user")
            if choice is ApplyChoice.SKIP:
                return ProviderResult(provider.id, ProviderRunStatus.SKIPPED, "skipped by user", found=True)
        self._checkpoint(ctx)

        button = self.ui.find_apply_affordance()
        if button is None:
            return ProviderResult(provider.id, ProviderRunStatus.SKIPPED, "apply control not found", found=True)
        await self.ui.click_element(button)
        await ctx.token.sleep(self.settings.settle_delay)
        if ctx.thumbnails.get(provider.id) == "current":
            await self.ui.keep_current_thumbnail()
            LOGGER.info("Kept the current %s cover", provider.name)
        LOGGER.info("Applied %s metadata (completeness %d/100)", provider.name, score)
        return ProviderResult(provider.id, ProviderRunStatus.APPLIED, found=True)

    async def _save(self, ctx: _RunContext) -> None:
        button = self.ui.find_save_affordance()
        if button is None:
            raise AutocurateError("Save control not found")
        waiter = self.signals.expect("mutation")
        await self.ui.click_element(button)
        event = await self.signals.wait_for("mutation", self.settings.save_fallback_timeout, waiter=waiter)
        if event is None:
            LOGGER.debug("No mutation observed within %.1fs of saving", self.settings.save_fallback_timeout)
            self.signals.mutation_performed("sceneUpdate")
        await ctx.token.sleep(self.settings.settle_delay, allow_skip=False)

    def _provider_satisfied(self, ctx: _RunContext, provider_id: str) -> bool:
        if ctx.already_scraped.get(provider_id):
            return True
        result = next((item for item in ctx.results if item.provider_id == provider_id), None)
        return bool(result and result.found)

    async def _organize_if_complete(self, ctx: _RunContext) -> None:
        self._checkpoint(ctx, allow_skip=False)
        current = await self.tracker.detector.detect_organized()
        if current.organized:
            ctx.organized = True
            LOGGER.info("Scene %s is already organized", ctx.scene_id)
            return

        satisfied = [self._provider_satisfied(ctx, provider.id) for provider in self.providers]
        ready = all(satisfied) if self.settings.organize_requires_all_providers else any(satisfied)
        if not ready:
            LOGGER.info("Skipping organize for scene %s: not every provider is satisfied", ctx.scene_id)
            return

        self.session.transition(RunState.ORGANIZING)
        with self._timed(ctx, "organize"):
            toggle = self.ui.find_organize_toggle()
            if toggle is None:
                raise AutocurateError("Organize control not found")
            if not toggle.checked:
                await toggle.toggle()
                await ctx.token.sleep(self.settings.settle_delay, allow_skip=False)
        self._checkpoint(ctx, allow_skip=False)

        self.session.transition(RunState.SAVING)
        with self._timed(ctx, "save_organized"):
            await self._save(ctx)
        ctx.organized = True
        self.tracker.update_status(ORGANIZED_ASPECT, {"organized": True})

    def _build_result(self, ctx: _RunContext, outcome: RunOutcome, started: float) -> RunResult:
        if outcome is RunOutcome.CANCELLED and not any(
            result.status is ProviderRunStatus.CANCELLED for result in ctx.results
        ):
            current = self.session.current_provider
            if current and all(result.provider_id != current for result in ctx.results):
                ctx.results.append(ProviderResult(current, ProviderRunStatus.CANCELLED, "cancelled by user"))
        return RunResult(
            scene_id=ctx.scene_id,
            outcome=outcome,
            scene_name=ctx.scene_name,
            providers=list(ctx.results),
            sources_used=[result.provider_id for result in ctx.results if result.status is ProviderRunStatus.APPLIED],
            errors=list(ctx.errors),
            organized=ctx.organized,
            duration_ms=round((time.monotonic() - started) * 1000),
            timing={step: round(ms) for step, ms in ctx.timing.items()},
            entities_created=ctx.entities_created,
        )

    def _record(self, ctx: _RunContext, result: RunResult) -> None:
        metadata: dict[str, Any] = {
            provider.id: ctx.already_scraped.get(provider.id, False) or provider.id in result.sources_used
            for provider in self.providers
        }
        metadata.update(
            {
                "organized": result.organized,
                "entitiesCreated": result.entities_created,
                "skippedSources": [
                    item.provider_id for item in result.providers if item.status is ProviderRunStatus.SKIPPED
                ],
                "thumbnails": dict(ctx.thumbnails),
            }
        )
        self.history.record(
            ctx.scene_id,
            RunRecord(
                success=result.success,
                scene_name=result.scene_name,
                url=ctx.location,
                sources_used=result.sources_used,
                errors=result.errors,
                duration_ms=result.duration_ms,
                metadata=metadata,
                timing=result.timing,
                cancelled=result.outcome is RunOutcome.CANCELLED,
            ),
        )
        self.tracker.update_status(
            AUTOMATION_ASPECT,
            {
                "success": result.success,
                "sources_used": result.sources_used,
                "errors": result.errors,
                "outcome": result.outcome.value,
            },
        )

    async def _notify(self, result: RunResult) -> None:
        await self.notifier.notify(
            RunNotification(
                scene_id=result.scene_id,
                scene_name=result.scene_name,
                outcome=result.outcome.value,
                sources_used=list(result.sources_used),
                errors=list(result.errors),
                duration_ms=result.duration_ms,
            )
        )

    async def _refresh_status(self, scene_id: str) -> None:
        await asyncio.sleep(self.settings.refresh_delay)
        self.client.clear()
        self.tracker.detector.clear_cache()
        if self.ui.current_entity_id() != scene_id:
            return
        try:
            await self.tracker.detect_current_status(scene_id)
        except AutocurateError as exc:
            LOGGER.warning("Status refresh after automation failed: %s", exc)
