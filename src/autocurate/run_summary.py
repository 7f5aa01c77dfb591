"""Log-friendly recaps of automation runs and history statistics.

Rendering here is plain text through :class:`~autocurate.logging_utils.LogBlock`
so it reads the same in the console and in the log file. Rich tables for the
CLI live in :mod:`autocurate.summary_table`.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, List

from .logging_utils import LogBlock

if TYPE_CHECKING:
    from .orchestrator import RunResult
    from .persistence.history_store import HistoryStatistics

LOGGER = logging.getLogger(__name__)


def summarize_messages(entries: List[str], *, limit: int = 5) -> List[str]:
    """Group duplicate messages and keep the ``limit`` most frequent.

    Args:
        entries: Messages to summarize.
        limit: Maximum number of distinct messages to show.

    Returns:
        Summary lines, most frequent first, with a trailing "more" line when truncated.
    """
    if not entries:
        return []
    counter = Counter(entries)
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    lines: List[str] = []
    for text, count in ordered[:limit]:
        prefix = f"{count}× " if count > 1 else ""
        lines.append(f"{prefix}{text}")
    remaining = len(ordered) - limit
    if remaining > 0:
        lines.append(f"... {remaining} more")
    return lines


def format_provider_lines(result: RunResult) -> List[str]:
    lines: List[str] = []
    for item in result.providers:
        line = f"{item.provider_id}: {item.status.value}"
        if item.reason:
            line += f" ({item.reason})"
        lines.append(line)
    return lines


def render_run_recap(result: RunResult) -> str:
    block = LogBlock("Automation Recap").fields(
        [
            ("Scene", result.scene_name or result.scene_id),
            ("Outcome", result.outcome.value),
            ("Duration", f"{result.duration_ms / 1000:.2f}s"),
            ("Sources Used", result.sources_used),
            ("Organized", "yes" if result.organized else "no"),
            ("Entities Created", result.entities_created),
        ]
    )
    block.section("Providers", format_provider_lines(result))
    if result.errors:
        block.section("Errors", summarize_messages(result.errors))
    return block.render()


def log_run_recap(result: RunResult) -> None:
    level = logging.INFO if result.success else logging.WARNING
    LOGGER.log(level, render_run_recap(result))


def render_statistics(stats: HistoryStatistics) -> str:
    """Plain-text block of the headline history statistics."""

    def percent(value: int | None) -> str:
        return f"{value}%" if value is not None else "n/a"

    rolling = stats.rolling_success_rate
    block = LogBlock("History Statistics").fields(
        [
            ("Total Runs", stats.total),
            ("Success Rate", percent(stats.success_rate if stats.total else None)),
            ("Unique Scenes", stats.unique_scenes),
            ("Last 20 Runs", percent(rolling.get("last20"))),
            ("Last 7 Days", percent(rolling.get("last7Days"))),
            ("Last 30 Days", percent(rolling.get("last30Days"))),
            ("Median Duration", f"{stats.duration_percentiles.get('p50', 0)}ms"),
        ]
    )
    block.section("Top Errors", [f"{count}× {text}" for text, count in stats.top_errors])
    return block.render()
