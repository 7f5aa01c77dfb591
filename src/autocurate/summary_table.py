from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:  # pragma: no cover
    from .duplicates.engine import DuplicateGroup, DuplicatePair
    from .orchestrator import RunResult
    from .persistence.history_store import HistoryEntry, HistoryStatistics


# Color constants for status indicators
SUCCESS_COLOR = "green"
WARNING_COLOR = "yellow"
ERROR_COLOR = "red"
DIM_COLOR = "dim"

# Symbol indicators for quick scanning
SUCCESS_SYMBOL = "✓"
WARNING_SYMBOL = "⚠"
ERROR_SYMBOL = "✗"
SKIP_SYMBOL = "⊘"
IGNORE_SYMBOL = "○"

_PROVIDER_STATUS_STYLE = {
    "applied": (SUCCESS_COLOR, SUCCESS_SYMBOL),
    "skipped": (WARNING_COLOR, SKIP_SYMBOL),
    "not_needed": (DIM_COLOR, IGNORE_SYMBOL),
    "cancelled": (ERROR_COLOR, ERROR_SYMBOL),
}

_OUTCOME_STYLE = {
    "success": (SUCCESS_COLOR, SUCCESS_SYMBOL),
    "failure": (ERROR_COLOR, ERROR_SYMBOL),
    "cancelled": (WARNING_COLOR, WARNING_SYMBOL),
}


class SummaryTableRenderer:
    """Renders run results, status snapshots and history as Rich Tables."""

    def __init__(self, console: Optional[Console] = None) -> None:
        """Initialize the renderer.

        Args:
            console: Optional Rich Console instance. If not provided, creates a new one.
        """
        self.console = console or Console()

    @staticmethod
    def _styled(text: str, color: str, symbol: Optional[str] = None) -> str:
        label = f"{symbol} {text}" if symbol else text
        return f"[{color}]{label}[/{color}]"

    @staticmethod
    def _flag(value: Optional[bool], *, false_color: str = DIM_COLOR) -> str:
        """Render a yes/no flag with a status symbol.

        Args:
            value: Flag to render; None renders as a dash
            false_color: Color used for a negative flag

        Returns:
            Rich formatted string
        """
        if value is None:
            return f"[{DIM_COLOR}]-[/{DIM_COLOR}]"
        if value:
            return f"[{SUCCESS_COLOR}]{SUCCESS_SYMBOL} yes[/{SUCCESS_COLOR}]"
        return f"[{false_color}]{IGNORE_SYMBOL} no[/{false_color}]"

    @staticmethod
    def _percent(value: Optional[int]) -> str:
        if value is None:
            return f"[{DIM_COLOR}]n/a[/{DIM_COLOR}]"
        if value >= 80:
            color = SUCCESS_COLOR
        elif value >= 50:
            color = WARNING_COLOR
        else:
            color = ERROR_COLOR
        return f"[{color}]{value}%[/{color}]"

    def render_run_table(self, result: RunResult) -> Table:
        """Render the per-provider outcome of one automation run.

        Args:
            result: Run result returned by the orchestrator

        Returns:
            Rich Table instance ready to print
        """
        color, symbol = _OUTCOME_STYLE.get(result.outcome.value, (DIM_COLOR, IGNORE_SYMBOL))
        title = f"Automation {self._styled(result.outcome.value, color, symbol)}"
        table = Table(title=title, show_header=True, header_style="bold")
        table.add_column("Provider", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Reason")

        for item in result.providers:
            status_color, status_symbol = _PROVIDER_STATUS_STYLE.get(item.status.value, (DIM_COLOR, IGNORE_SYMBOL))
            table.add_row(
                item.provider_id,
                self._styled(item.status.value, status_color, status_symbol),
                item.reason or "",
            )

        table.caption = (
            f"{result.duration_ms / 1000:.2f}s, organized: {'yes' if result.organized else 'no'}, "
            f"entities created: {result.entities_created}"
        )
        return table

    def render_status_table(self, summary: Dict[str, Any]) -> Table:
        """Render a status summary as produced by ``StatusTracker.get_status_summary``.

        Args:
            summary: Status summary mapping

        Returns:
            Rich Table instance ready to print
        """
        scene = summary.get("scene", {})
        completion = summary.get("completion", {})
        table = Table(
            title=f"{scene.get('name') or 'Unknown Scene'} ({completion.get('percentage', 0)}% complete)",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Aspect", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Confidence", justify="right")
        table.add_column("Strategy")

        for provider_id, source in summary.get("sources", {}).items():
            table.add_row(
                source.get("name") or provider_id,
                self._flag(source.get("scraped")),
                str(source.get("confidence", 0)),
                source.get("strategy") or "",
            )
        organized = summary.get("organized", {})
        table.add_row("Organized", self._flag(organized.get("organized"), false_color=WARNING_COLOR), "", "")

        recommendations = completion.get("recommendations") or []
        if recommendations:
            table.caption = "Next: " + "; ".join(recommendations)
        return table

    def render_statistics_table(self, stats: HistoryStatistics) -> Table:
        """Render headline history statistics.

        Args:
            stats: Aggregates computed from the run history

        Returns:
            Rich Table instance ready to print
        """
        table = Table(title="Automation History", show_header=True, header_style="bold")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", justify="right")

        rolling = stats.rolling_success_rate
        percentiles = stats.duration_percentiles
        table.add_row("Total Runs", str(stats.total))
        table.add_row("Successful", self._styled(str(stats.successful), SUCCESS_COLOR if stats.successful else DIM_COLOR))
        table.add_row("Failed", self._styled(str(stats.failed), ERROR_COLOR if stats.failed else DIM_COLOR))
        table.add_row("Success Rate", self._percent(stats.success_rate if stats.total else None))
        table.add_row("Last 20 Runs", self._percent(rolling.get("last20")))
        table.add_row("Last 7 Days", self._percent(rolling.get("last7Days")))
        table.add_row("Last 30 Days", self._percent(rolling.get("last30Days")))
        table.add_row("Unique Scenes", str(stats.unique_scenes))
        table.add_row("Average Duration", f"{stats.average_duration / 1000:.2f}s")
        table.add_row(
            "p50 / p90 / p95",
            " / ".join(f"{percentiles.get(key, 0) / 1000:.2f}s" for key in ("p50", "p90", "p95")),
        )
        for source, count in sorted(stats.sources_used.items()):
            average = stats.provider_average_duration.get(source)
            suffix = f" (avg {average / 1000:.2f}s)" if average else ""
            table.add_row(f"Runs using {source}", f"{count}{suffix}")
        return table

    def render_errors_table(self, stats: HistoryStatistics) -> Optional[Table]:
        """Render the most frequent errors, or None when there are none."""
        if not stats.top_errors:
            return None
        table = Table(title="Top Errors", show_header=True, header_style="bold")
        table.add_column("Count", justify="right")
        table.add_column("Error")
        for message, count in stats.top_errors:
            table.add_row(self._styled(str(count), ERROR_COLOR), message)
        return table

    def render_history_table(self, entries: Sequence[HistoryEntry], *, limit: int = 20) -> Table:
        table = Table(title="Recent Runs", show_header=True, header_style="bold")
        table.add_column("When", no_wrap=True)
        table.add_column("Scene", style="cyan")
        table.add_column("Result")
        table.add_column("Sources")
        table.add_column("Duration", justify="right")

        for entry in list(entries)[:limit]:
            if entry.cancelled:
                result = self._styled("cancelled", WARNING_COLOR, WARNING_SYMBOL)
            elif entry.success:
                result = self._styled("success", SUCCESS_COLOR, SUCCESS_SYMBOL)
            else:
                result = self._styled("failed", ERROR_COLOR, ERROR_SYMBOL)
            duration = f"{entry.duration_ms / 1000:.1f}s" if entry.duration_ms is not None else "-"
            table.add_row(entry.timestamp, entry.scene_name, result, ", ".join(entry.sources_used) or "-", duration)
        return table

    def render_pairs_table(self, pairs: Sequence[DuplicatePair]) -> Table:
        """Render local-scan candidate pairs, closest first.

        Args:
            pairs: Candidate pairs from the local scan

        Returns:
            Rich Table instance ready to print
        """
        table = Table(title=f"Duplicate Candidates ({len(pairs)})", show_header=True, header_style="bold")
        table.add_column("Scenes", style="cyan", no_wrap=True)
        table.add_column("Distance", justify="right")
        table.add_column("Similarity", justify="right")
        for pair in pairs:
            table.add_row(
                " / ".join(pair.entity_ids),
                str(pair.hamming_distance),
                self._percent(pair.similarity_score),
            )
        return table

    def render_groups_table(self, groups: Sequence[DuplicateGroup]) -> Table:
        table = Table(title=f"Duplicate Groups ({len(groups)})", show_header=True, header_style="bold")
        table.add_column("Scenes", style="cyan")
        table.add_column("Titles")
        table.add_column("Largest File", justify="right")
        for group in groups:
            largest = max((scene.primary_file_size for scene in group.scenes), default=0)
            table.add_row(
                ", ".join(group.entity_ids),
                "; ".join(scene.display_name for scene in group.scenes),
                _format_size(largest),
            )
        return table

    def print(self, table: Optional[Table]) -> None:
        if table is None:
            return
        self.console.print()
        self.console.print(table)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"
