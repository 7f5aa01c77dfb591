"""Bounded, newest-first log of automation runs with derived statistics."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import HistorySettings
from ..errors import MAX_ERROR_LENGTH, truncate_error
from ..utils import dedupe_preserve_order, isoformat_utc, parse_iso_timestamp, truncate_text, utc_now
from .state_store import HISTORY_KEY, StateStore

LOGGER = logging.getLogger(__name__)

HISTORY_VERSION = "1.0"
MAX_SOURCES = 5
MAX_ERRORS = 10
MAX_SCENE_NAME = 140
MAX_URL = 500
ERROR_GROUP_LENGTH = 100
TOP_ERRORS = 5
ROLLING_RUNS = 20


@dataclass
class RunRecord:
    """What the orchestrator knows about a finished run, before sanitising."""

    success: bool
    scene_name: Optional[str] = None
    url: Optional[str] = None
    sources_used: List[str] = field(default_factory=list)
    errors: List[Any] = field(default_factory=list)
    duration_ms: Optional[float] = None
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    timing: Dict[str, float] = field(default_factory=dict)
    cancelled: bool = False


@dataclass(frozen=True)
class HistoryEntry:
    scene_id: str
    scene_name: str
    timestamp: str
    success: bool
    url: Optional[str] = None
    sources_used: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    duration_ms: Optional[int] = None
    retry_count: int = 0
    cancelled: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timing: Mapping[str, int] = field(default_factory=dict)
    version: str = HISTORY_VERSION

    @property
    def moment(self) -> Optional[dt.datetime]:
        return parse_iso_timestamp(self.timestamp)

    @property
    def key(self) -> tuple[str, str]:
        return (self.scene_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sceneId": self.scene_id,
            "sceneName": self.scene_name,
            "url": self.url,
            "timestamp": self.timestamp,
            "success": self.success,
            "cancelled": self.cancelled,
            "sourcesUsed": list(self.sources_used),
            "errors": list(self.errors),
            "duration": self.duration_ms,
            "retryCount": self.retry_count,
            "metadata": dict(self.metadata),
            "timing": dict(self.timing),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional[HistoryEntry]:
        """Build an entry from its stored form; None when the shape is invalid."""
        if not isinstance(data, Mapping):
            return None
        scene_id = data.get("sceneId")
        timestamp = data.get("timestamp")
        success = data.get("success")
        if not scene_id or not isinstance(timestamp, str) or not timestamp or not isinstance(success, bool):
            return None
        if parse_iso_timestamp(timestamp) is None:
            return None
        return _sanitised_entry(
            scene_id=str(scene_id),
            timestamp=timestamp,
            run=RunRecord(
                success=success,
                scene_name=data.get("sceneName"),
                url=data.get("url"),
                sources_used=_as_list(data.get("sourcesUsed")),
                errors=_as_list(data.get("errors")),
                duration_ms=data.get("duration"),
                retry_count=data.get("retryCount") or 0,
                metadata=data.get("metadata") if isinstance(data.get("metadata"), Mapping) else {},
                timing=data.get("timing") if isinstance(data.get("timing"), Mapping) else {},
                cancelled=bool(data.get("cancelled", False)),
            ),
            version=str(data.get("version") or HISTORY_VERSION),
        )


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_duration(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return None
    return max(0, round(value))


def _sanitised_entry(scene_id: str, timestamp: str, run: RunRecord, version: str = HISTORY_VERSION) -> HistoryEntry:
    sources = dedupe_preserve_order(str(source) for source in run.sources_used if source)[:MAX_SOURCES]
    errors = tuple(truncate_error(error, MAX_ERROR_LENGTH) for error in run.errors[:MAX_ERRORS])
    try:
        retry_count = max(0, int(run.retry_count))
    except (TypeError, ValueError):
        retry_count = 0
    timing = {
        str(step): duration
        for step, raw in run.timing.items()
        if (duration := _as_duration(raw)) is not None
    }
    return HistoryEntry(
        scene_id=scene_id,
        scene_name=truncate_text(run.scene_name or f"Scene {scene_id}", MAX_SCENE_NAME),
        timestamp=timestamp,
        success=bool(run.success),
        url=truncate_text(run.url, MAX_URL) if run.url else None,
        sources_used=tuple(sources),
        errors=errors,
        duration_ms=_as_duration(run.duration_ms),
        retry_count=retry_count,
        cancelled=bool(run.cancelled),
        metadata=dict(run.metadata),
        timing=timing,
        version=version,
    )


@dataclass
class HistoryStatistics:
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: int = 0
    unique_scenes: int = 0
    sources_used: Dict[str, int] = field(default_factory=dict)
    provider_average_duration: Dict[str, int] = field(default_factory=dict)
    average_duration: int = 0
    total_duration: int = 0
    duration_percentiles: Dict[str, int] = field(default_factory=dict)
    rolling_success_rate: Dict[str, Optional[int]] = field(default_factory=dict)
    top_errors: List[tuple[str, int]] = field(default_factory=list)
    hourly: Dict[int, Dict[str, int]] = field(default_factory=dict)
    errors_count: int = 0
    oldest_entry: Optional[str] = None
    newest_entry: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAutomations": self.total,
            "successfulAutomations": self.successful,
            "failedAutomations": self.failed,
            "successRate": self.success_rate,
            "uniqueScenes": self.unique_scenes,
            "sourcesUsed": dict(self.sources_used),
            "providerAverageDuration": dict(self.provider_average_duration),
            "averageDuration": self.average_duration,
            "totalDuration": self.total_duration,
            "durationPercentiles": dict(self.duration_percentiles),
            "rollingSuccessRate": dict(self.rolling_success_rate),
            "topErrors": [{"message": message, "count": count} for message, count in self.top_errors],
            "hourly": {str(hour): dict(bucket) for hour, bucket in self.hourly.items()},
            "errorsCount": self.errors_count,
            "oldestEntry": self.oldest_entry,
            "newestEntry": self.newest_entry,
        }


def _rate(entries: Iterable[HistoryEntry]) -> Optional[int]:
    materialized = list(entries)
    if not materialized:
        return None
    successes = sum(1 for entry in materialized if entry.success)
    return round(successes / len(materialized) * 100)


def percentile(values: List[int], pct: float) -> int:
    """Nearest-rank percentile of ``values`` (0 for an empty list)."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def compute_statistics(entries: List[HistoryEntry], now: Optional[dt.datetime] = None) -> HistoryStatistics:
    now = now or utc_now()
    stats = HistoryStatistics()
    stats.total = len(entries)
    stats.hourly = {hour: {"success": 0, "total": 0} for hour in range(24)}
    if not entries:
        stats.rolling_success_rate = {"last20": None, "last7Days": None, "last30Days": None}
        return stats

    stats.successful = sum(1 for entry in entries if entry.success)
    stats.failed = stats.total - stats.successful
    stats.success_rate = round(stats.successful / stats.total * 100)
    stats.unique_scenes = len({entry.scene_id for entry in entries})
    stats.errors_count = sum(len(entry.errors) for entry in entries)

    provider_counts: Counter[str] = Counter()
    provider_durations: Dict[str, List[int]] = {}
    for entry in entries:
        for source in entry.sources_used:
            provider_counts[source] += 1
            if entry.duration_ms:
                provider_durations.setdefault(source, []).append(entry.duration_ms)
    stats.sources_used = dict(provider_counts)
    stats.provider_average_duration = {
        source: round(sum(values) / len(values)) for source, values in provider_durations.items()
    }

    durations = [entry.duration_ms for entry in entries if entry.duration_ms]
    if durations:
        stats.total_duration = sum(durations)
        stats.average_duration = round(stats.total_duration / len(durations))
    stats.duration_percentiles = {
        "p50": percentile(durations, 50),
        "p90": percentile(durations, 90),
        "p95": percentile(durations, 95),
    }

    dated = [(entry, entry.moment) for entry in entries]
    stats.rolling_success_rate = {
        "last20": _rate(entries[:ROLLING_RUNS]),
        "last7Days": _rate(entry for entry, moment in dated if moment and now - moment <= dt.timedelta(days=7)),
        "last30Days": _rate(entry for entry, moment in dated if moment and now - moment <= dt.timedelta(days=30)),
    }

    error_groups: Counter[str] = Counter()
    for entry in entries:
        for error in entry.errors:
            error_groups[truncate_text(error.strip().lower(), ERROR_GROUP_LENGTH)] += 1
    stats.top_errors = error_groups.most_common(TOP_ERRORS)

    for entry, moment in dated:
        if moment is None:
            continue
        bucket = stats.hourly[moment.hour]
        bucket["total"] += 1
        if entry.success:
            bucket["success"] += 1

    ordered = sorted((moment, entry.timestamp) for entry, moment in dated if moment)
    if ordered:
        stats.oldest_entry = ordered[0][1]
        stats.newest_entry = ordered[-1][1]
    return stats


class HistoryStore:
    """Append-only run log persisted through a :class:`StateStore`.

    Entries are stored newest first and never mutated. The list is re-bounded
    to ``settings.max_entries`` after every write, and the actual file write
    is deferred by ``settings.flush_delay`` seconds.
    """

    def __init__(
        self,
        state: StateStore,
        settings: Optional[HistorySettings] = None,
        *,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.state = state
        self.settings = settings or HistorySettings()
        self._clock = clock
        self._entries: Optional[List[HistoryEntry]] = None

    @property
    def entries(self) -> List[HistoryEntry]:
        if self._entries is None:
            self._entries = self._load()
        return self._entries

    def _load(self) -> List[HistoryEntry]:
        raw = self.state.get(HISTORY_KEY, [])
        if not isinstance(raw, list):
            LOGGER.warning("Stored history is not a list; resetting to empty")
            self.state.set(HISTORY_KEY, [])
            return []
        entries = [entry for entry in (HistoryEntry.from_dict(item) for item in raw) if entry is not None]
        if len(entries) != len(raw):
            LOGGER.warning("Dropped %d malformed history entries", len(raw) - len(entries))
            self._entries = entries
            self._persist()
        return entries

    def _persist(self) -> None:
        self.state.set(HISTORY_KEY, [entry.to_dict() for entry in self.entries])
        self.state.schedule_save(self.settings.flush_delay)

    def record(self, scene_id: str, run: RunRecord) -> HistoryEntry:
        entry = _sanitised_entry(str(scene_id), isoformat_utc(self._clock()), run)
        entries = self.entries
        entries.insert(0, entry)
        del entries[self.settings.max_entries :]
        self._persist()
        LOGGER.debug("Recorded %s run for scene %s", "successful" if entry.success else "failed", scene_id)
        return entry

    def flush(self) -> None:
        self.state.flush()

    def get_all(self) -> List[HistoryEntry]:
        return list(self.entries)

    def get_scene_history(self, scene_id: str) -> List[HistoryEntry]:
        return [entry for entry in self.entries if entry.scene_id == str(scene_id)]

    def get_last_automation(self, scene_id: str) -> Optional[HistoryEntry]:
        history = self.get_scene_history(scene_id)
        return history[0] if history else None

    def clear(self) -> None:
        self._entries = []
        self._persist()

    def clear_old(self, days: Optional[int] = None) -> int:
        days = self.settings.retention_days if days is None else days
        cutoff = self._clock() - dt.timedelta(days=days)
        kept = [entry for entry in self.entries if (moment := entry.moment) is not None and moment >= cutoff]
        removed = len(self.entries) - len(kept)
        if removed:
            self._entries = kept
            self._persist()
            LOGGER.info("Pruned %d history entries older than %d days", removed, days)
        return removed

    def get_statistics(self) -> HistoryStatistics:
        return compute_statistics(self.entries, now=self._clock())

    def export_history(self) -> str:
        payload = {
            "exportDate": isoformat_utc(self._clock()),
            "version": HISTORY_VERSION,
            "statistics": self.get_statistics().to_dict(),
            "history": [entry.to_dict() for entry in self.entries],
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)

    def import_history(self, payload: str | Mapping[str, Any]) -> bool:
        """Merge exported history into the store.

        Invalid entries are dropped. Imported entries win over existing ones
        with the same ``(sceneId, timestamp)``. Returns False when the payload
        carries no usable entries.
        """
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                LOGGER.warning("History import is not valid JSON: %s", exc)
                return False
        if not isinstance(payload, Mapping) or not isinstance(payload.get("history"), list):
            LOGGER.warning("History import is missing a history array")
            return False

        imported = [entry for entry in (HistoryEntry.from_dict(item) for item in payload["history"]) if entry]
        if not imported:
            LOGGER.warning("History import contained no valid entries")
            return False

        merged: Dict[tuple[str, str], HistoryEntry] = {entry.key: entry for entry in self.entries}
        for entry in imported:
            merged[entry.key] = entry
        ordered = sorted(
            merged.values(),
            key=lambda entry: entry.moment or dt.datetime.min.replace(tzinfo=dt.timezone.utc),
            reverse=True,
        )
        self._entries = ordered[: self.settings.max_entries]
        self._persist()
        LOGGER.info("Imported %d history entries (%d total)", len(imported), len(self._entries))
        return True

    def get_storage_info(self) -> Dict[str, Any]:
        serialized = json.dumps([entry.to_dict() for entry in self.entries])
        return {
            "entries": len(self.entries),
            "maxEntries": self.settings.max_entries,
            "approximateBytes": len(serialized.encode("utf-8")),
            "stateFile": str(self.state.state_file),
        }
