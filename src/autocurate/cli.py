from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

import httpx
from rich.console import Console

from .backup import BackupManager, ProfileStore, apply_flat_settings
from .config import AppConfig, apply_env_overrides, load_config
from .duplicates import DuplicateEngine, SceneMerger
from .errors import AutocurateError
from .logging_utils import configure_logging, render_fields_block
from .notifications import NotificationService
from .orchestrator import AutomationOrchestrator
from .persistence import HistoryStore, StateStore
from .persistence.state_store import CONFIG_KEY
from .prompts import ApplyChoice, AutoPrompter, ConsolePrompter, Prompter
from .routing import SourceRouter
from .run_summary import log_run_recap
from .signals import RequestSignals
from .stash import StashClient
from .stash.client import api_key_hook
from .status import StatusDetector, StatusTracker
from .summary_table import SummaryTableRenderer
from .thumbnails import ThumbnailInspector
from .ui_adapter import UIAdapter, load_adapter_factory
from .utils import env_bool
from .version import __version__

LOGGER = logging.getLogger(__name__)

CONSOLE = Console()

THUMBNAIL_TIMEOUT = 15.0


@dataclass
class Services:
    """Every long-lived collaborator, constructed once per command."""

    config: AppConfig
    state: StateStore
    history: HistoryStore
    signals: RequestSignals
    client: StashClient
    detector: StatusDetector
    tracker: StatusTracker
    router: SourceRouter
    duplicates: DuplicateEngine
    notifier: NotificationService
    http: httpx.AsyncClient
    ui: Optional[UIAdapter] = None

    async def aclose(self) -> None:
        self.state.flush()
        await self.duplicates.aclose()
        await self.http.aclose()
        await self.client.aclose()


def open_state(config: AppConfig) -> tuple[StateStore, HistoryStore]:
    state = StateStore(config.state_dir)
    return state, HistoryStore(state, config.history)


def load_settings(path: Optional[Path]) -> AppConfig:
    """Load the YAML config, then stored overrides (profiles, restored backups), then the environment."""
    config = load_config(path)
    state = StateStore(config.state_dir)
    stored = state.get(CONFIG_KEY)
    if isinstance(stored, dict):
        applied = apply_flat_settings(config, stored)
        if applied:
            LOGGER.debug("Applied stored settings: %s", ", ".join(applied))
        apply_env_overrides(config)
    return config


def build_services(
    config: AppConfig,
    *,
    ui: Optional[UIAdapter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    state, history = open_state(config)
    signals = RequestSignals()
    client = StashClient(config.stash, signals=signals, transport=transport)
    detector = StatusDetector(client, config.providers, ui=ui, signals=signals)
    tracker = StatusTracker(client, detector, config.providers, ui=ui)
    router = SourceRouter(state, enabled=config.automation.adaptive_routing)
    duplicates = DuplicateEngine(client, state, config.duplicates, transport=transport)
    http = httpx.AsyncClient(
        timeout=THUMBNAIL_TIMEOUT,
        transport=transport,
        follow_redirects=True,
        event_hooks={"request": [api_key_hook(config.stash)]},
    )
    return Services(
        config=config,
        state=state,
        history=history,
        signals=signals,
        client=client,
        detector=detector,
        tracker=tracker,
        router=router,
        duplicates=duplicates,
        notifier=NotificationService.from_settings(config.notifications),
        http=http,
        ui=ui,
    )


def build_orchestrator(services: Services, *, prompter: Optional[Prompter] = None) -> AutomationOrchestrator:
    if services.ui is None:
        raise AutocurateError("Automation needs a UI adapter")
    config = services.config
    return AutomationOrchestrator(
        ui=services.ui,
        client=services.client,
        tracker=services.tracker,
        history=services.history,
        settings=config.automation,
        providers=config.providers,
        signals=services.signals,
        router=services.router,
        prompter=prompter or ConsolePrompter(CONSOLE),
        notifier=services.notifier,
        thumbnails=ThumbnailInspector(services.http, min_improvement=config.automation.thumbnail_min_improvement),
    )


def _setup(args: argparse.Namespace) -> AppConfig:
    verbose = bool(getattr(args, "verbose", False)) or env_bool("AUTOCURATE_DEBUG") is True
    configure_logging(verbose=verbose, log_file=getattr(args, "log_file", None))
    return load_settings(getattr(args, "config", None))


def _make_adapter(reference: Optional[str], config: AppConfig, scene_id: str) -> Optional[UIAdapter]:
    if not reference:
        return None
    factory = load_adapter_factory(reference)
    return factory(config=config, scene_id=scene_id)


def _prompter(args: argparse.Namespace) -> Prompter:
    if getattr(args, "yes", False):
        return AutoPrompter(ApplyChoice.APPLY, confirm_answer=True)
    return ConsolePrompter(CONSOLE)


def _write_output(text: str, output: Optional[Path]) -> None:
    if output is None:
        CONSOLE.print(text, markup=False, highlight=False, soft_wrap=True)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    LOGGER.info("Wrote %s", output)


def _read_input(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        LOGGER.error("Cannot read %s: %s", path, exc)
        return None


def _guarded(action: Callable[[], int]) -> int:
    try:
        return action()
    except AutocurateError as exc:
        LOGGER.error("%s", exc)
        return 1


# status


async def _status(config: AppConfig, args: argparse.Namespace) -> int:
    services = build_services(config, ui=_make_adapter(args.adapter, config, args.scene))
    try:
        await services.tracker.detect_current_status(args.scene)
        summary = services.tracker.get_status_summary()
        last = services.history.get_last_automation(args.scene)
    finally:
        await services.aclose()

    renderer = SummaryTableRenderer(CONSOLE)
    renderer.print(renderer.render_status_table(summary))
    if last is not None:
        renderer.print(renderer.render_history_table([last], limit=1))
    return 0


def run_status(args: argparse.Namespace) -> int:
    return _guarded(lambda: asyncio.run(_status(_setup(args), args)))


# run


async def _automation(config: AppConfig, args: argparse.Namespace) -> int:
    ui = _make_adapter(args.adapter, config, args.scene)
    if ui is None:
        raise AutocurateError("The run command needs --adapter module:factory")
    current = ui.current_entity_id()
    if current != args.scene:
        raise AutocurateError(f"Adapter is on scene {current or '(none)'}, expected {args.scene}")

    services = build_services(config, ui=ui)
    try:
        orchestrator = build_orchestrator(services, prompter=_prompter(args))
        result = await orchestrator.run(force=args.force or ())
    finally:
        await services.aclose()

    log_run_recap(result)
    renderer = SummaryTableRenderer(CONSOLE)
    renderer.print(renderer.render_run_table(result))
    return 0 if result.success else 1


def run_automation(args: argparse.Namespace) -> int:
    return _guarded(lambda: asyncio.run(_automation(_setup(args), args)))


# history


def _history(config: AppConfig, args: argparse.Namespace) -> int:
    _, history = open_state(config)
    renderer = SummaryTableRenderer(CONSOLE)
    action = args.action

    if action == "stats":
        stats = history.get_statistics()
        renderer.print(renderer.render_statistics_table(stats))
        renderer.print(renderer.render_errors_table(stats))
        if history.entries:
            renderer.print(renderer.render_history_table(history.entries, limit=args.limit))
        return 0
    if action == "export":
        _write_output(history.export_history(), args.output)
        return 0
    if action == "import":
        text = _read_input(args.path)
        if text is None or not history.import_history(text):
            return 1
        history.flush()
        return 0
    if action == "prune":
        removed = history.clear_old(args.days)
        history.flush()
        CONSOLE.print(f"Removed {removed} entries")
        return 0
    if action == "clear":
        if not args.yes and not asyncio.run(ConsolePrompter(CONSOLE).confirm("Delete the entire run history?")):
            return 1
        history.clear()
        history.flush()
        CONSOLE.print("History cleared")
        return 0

    LOGGER.error("Unknown history action: %s", action)
    return 2


# duplicates


async def _duplicates(config: AppConfig, args: argparse.Namespace) -> int:
    services = build_services(config)
    renderer = SummaryTableRenderer(CONSOLE)
    engine = services.duplicates
    try:
        if args.action == "server":
            groups = await engine.find_server_groups(args.accuracy, args.duration_diff)
            renderer.print(renderer.render_groups_table(groups))
            return 0
        if args.action == "scan":
            pairs = await engine.local_scan(args.limit, args.threshold)
            renderer.print(renderer.render_pairs_table(pairs))
            return 0
        if args.action == "merge":
            merger = SceneMerger(services.client)
            plan = await merger.prepare(args.ids)
            LOGGER.info(
                render_fields_block(
                    "Merge Plan",
                    {
                        "Destination": f"{plan.destination.id} ({plan.destination.display_name})",
                        "Sources": plan.source_ids,
                        "Metadata Donor": plan.donor_id or "(none)",
                        "Donated Fields": sorted(plan.values) or "(none)",
                    },
                )
            )
            prompter = _prompter(args)
            if not await prompter.confirm(f"Merge {', '.join(plan.source_ids)} into {plan.destination.id}?"):
                return 1
            await merger.merge(plan)
            if args.delete_sources:
                await merger.offer_source_deletion(plan, prompter, delete_file=args.delete_files)
            return 0
        if args.action == "ignore":
            if args.clear:
                engine.clear_ignored()
                CONSOLE.print("Ignore lists cleared")
                return 0
            if len(args.ids) < 2:
                LOGGER.error("Ignoring needs at least two scene ids")
                return 2
            key = engine.ignore_pair(*args.ids) if len(args.ids) == 2 else engine.ignore_group(args.ids)
            CONSOLE.print(f"Ignoring {key}")
            return 0
    finally:
        await services.aclose()

    LOGGER.error("Unknown duplicates action: %s", args.action)
    return 2


def run_duplicates(args: argparse.Namespace) -> int:
    return _guarded(lambda: asyncio.run(_duplicates(_setup(args), args)))


# backup


def _backup(config: AppConfig, args: argparse.Namespace) -> int:
    state, history = open_state(config)
    manager = BackupManager(state, history, config)

    if args.action == "export":
        _write_output(manager.export_json(), args.output)
        return 0
    if args.action == "import":
        text = _read_input(args.path)
        if text is None:
            return 1
        report = manager.import_bundle(text)
        history.flush()
        if not report["ok"]:
            LOGGER.error("Backup import failed: %s", report.get("error", "nothing restored"))
            return 1
        LOGGER.info(
            render_fields_block(
                "Backup Restored",
                {"Restored": report["restored"], "Skipped": report["skipped"] or "(none)"},
            )
        )
        return 0

    LOGGER.error("Unknown backup action: %s", args.action)
    return 2


# profiles


def _profiles(config: AppConfig, args: argparse.Namespace) -> int:
    state = StateStore(config.state_dir)
    profiles = ProfileStore(state)

    if args.action == "list":
        names = profiles.list_profiles()
        if not names:
            CONSOLE.print("No saved profiles")
        for name in names:
            CONSOLE.print(name)
        return 0
    if args.action == "save":
        try:
            profiles.save_profile(args.name, config)
        except ValueError as exc:
            LOGGER.error("%s", exc)
            return 1
        CONSOLE.print(f"Saved profile {args.name}")
        return 0
    if args.action == "apply":
        applied = profiles.apply_profile(args.name, config)
        if applied is None:
            LOGGER.error("No profile named %s", args.name)
            return 1
        state.set(CONFIG_KEY, config.to_dict())
        state.save()
        CONSOLE.print(f"Applied profile {args.name} ({len(applied)} settings)")
        return 0
    if args.action == "delete":
        if not profiles.delete_profile(args.name):
            LOGGER.error("No profile named %s", args.name)
            return 1
        CONSOLE.print(f"Deleted profile {args.name}")
        return 0

    LOGGER.error("Unknown profiles action: %s", args.action)
    return 2


def run_history(args: argparse.Namespace) -> int:
    return _guarded(lambda: _history(_setup(args), args))


def run_backup(args: argparse.Namespace) -> int:
    return _guarded(lambda: _backup(_setup(args), args))


def run_profiles(args: argparse.Namespace) -> int:
    return _guarded(lambda: _profiles(_setup(args), args))


COMMANDS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "status": run_status,
    "run": run_automation,
    "history": run_history,
    "duplicates": run_duplicates,
    "backup": run_backup,
    "profiles": run_profiles,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autocurate", description="Stash metadata curation automation")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to the YAML configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    commands = parser.add_subparsers(dest="command", required=True)

    status = commands.add_parser("status", help="Show what a scene still needs")
    status.add_argument("scene", help="Scene id")
    status.add_argument("--adapter", default=None, help="UI adapter factory as module:callable")

    run = commands.add_parser("run", help="Run automation on a scene")
    run.add_argument("scene", help="Scene id")
    run.add_argument(
        "--adapter",
        required=True,
        help="UI adapter factory as module:callable, called with config= and scene_id=",
    )
    run.add_argument("--force", nargs="+", default=[], metavar="PROVIDER", help="Scrape these providers again")
    run.add_argument("--yes", action="store_true", help="Apply scraped data without asking")

    history = commands.add_parser("history", help="Inspect and maintain the run history")
    history_actions = history.add_subparsers(dest="action", required=True)
    stats = history_actions.add_parser("stats", help="Show statistics and recent runs")
    stats.add_argument("--limit", type=int, default=20)
    export = history_actions.add_parser("export", help="Export history as JSON")
    export.add_argument("--output", "-o", type=Path, default=None)
    history_import = history_actions.add_parser("import", help="Merge an exported history file")
    history_import.add_argument("path", type=Path)
    prune = history_actions.add_parser("prune", help="Drop entries older than the retention window")
    prune.add_argument("--days", type=int, default=None)
    clear = history_actions.add_parser("clear", help="Delete the entire history")
    clear.add_argument("--yes", action="store_true")

    duplicates = commands.add_parser("duplicates", help="Find and merge duplicate scenes")
    duplicate_actions = duplicates.add_subparsers(dest="action", required=True)
    server = duplicate_actions.add_parser("server", help="Groups from the server's phash index")
    server.add_argument("--accuracy", choices=["exact", "high", "medium", "low"], default=None)
    server.add_argument("--duration-diff", type=float, default=None)
    scan = duplicate_actions.add_parser("scan", help="Hash screenshots locally and compare")
    scan.add_argument("--limit", type=int, default=None)
    scan.add_argument("--threshold", type=int, default=None)
    merge = duplicate_actions.add_parser("merge", help="Merge scenes into the one with the largest file")
    merge.add_argument("ids", nargs="+")
    merge.add_argument("--delete-sources", action="store_true", help="Offer to delete the merged-away scenes")
    merge.add_argument("--delete-files", action="store_true", help="Also delete their files")
    merge.add_argument("--yes", action="store_true", help="Answer yes to every confirmation")
    ignore = duplicate_actions.add_parser("ignore", help="Stop reporting a pair or group")
    ignore.add_argument("ids", nargs="*")
    ignore.add_argument("--clear", action="store_true", help="Forget every ignored pair and group")

    backup = commands.add_parser("backup", help="Export or restore all persisted state")
    backup_actions = backup.add_subparsers(dest="action", required=True)
    backup_export = backup_actions.add_parser("export")
    backup_export.add_argument("--output", "-o", type=Path, default=None)
    backup_import = backup_actions.add_parser("import")
    backup_import.add_argument("path", type=Path)

    profiles = commands.add_parser("profiles", help="Manage named settings profiles")
    profile_actions = profiles.add_subparsers(dest="action", required=True)
    profile_actions.add_parser("list")
    for name in ("save", "apply", "delete"):
        action = profile_actions.add_parser(name)
        action.add_argument("name")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = COMMANDS[args.command]
    try:
        return handler(args)
    except KeyboardInterrupt:
        CONSOLE.print("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
