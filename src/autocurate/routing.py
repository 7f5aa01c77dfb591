"""Per-provider success counters and the provider ordering derived from them."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .config import ProviderSettings
from .persistence.state_store import SOURCE_STATS_KEY, StateStore
from .utils import isoformat_utc, utc_now

LOGGER = logging.getLogger(__name__)

UNSEEN_PRIOR = 0.5


@dataclass
class SourceStats:
    success: int = 0
    fail: int = 0
    last: str | None = None

    @property
    def total(self) -> int:
        return self.success + self.fail

    @property
    def ratio(self) -> float:
        return self.success / self.total if self.total else UNSEEN_PRIOR

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "fail": self.fail, "last": self.last}

    @classmethod
    def from_dict(cls, data: Any) -> SourceStats:
        if not isinstance(data, dict):
            return cls()
        try:
            success = max(0, int(data.get("success", 0)))
            fail = max(0, int(data.get("fail", 0)))
        except (TypeError, ValueError):
            return cls()
        last = data.get("last")
        return cls(success=success, fail=fail, last=last if isinstance(last, str) else None)


class SourceRouter:
    """Orders providers by historical success when adaptive routing is enabled."""

    def __init__(
        self,
        state: StateStore,
        *,
        enabled: bool = False,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.state = state
        self.enabled = enabled
        self._clock = clock

    def stats(self) -> dict[str, SourceStats]:
        raw = self.state.get(SOURCE_STATS_KEY, {})
        if not isinstance(raw, dict):
            LOGGER.warning("Stored source statistics are not a mapping; ignoring them")
            return {}
        return {str(key): SourceStats.from_dict(value) for key, value in raw.items()}

    def record_outcome(self, provider_id: str, ok: bool) -> SourceStats:
        stats = self.stats()
        entry = stats.setdefault(provider_id, SourceStats())
        if ok:
            entry.success += 1
        else:
            entry.fail += 1
        entry.last = isoformat_utc(self._clock())
        self.state.set(SOURCE_STATS_KEY, {key: value.to_dict() for key, value in stats.items()})
        self.state.schedule_save(0)
        return entry

    def order(self, providers: Sequence[ProviderSettings]) -> list[ProviderSettings]:
        """Configured order when disabled, otherwise best ratio first (stable for ties)."""
        ordered = list(providers)
        if not self.enabled or len(ordered) <= 1:
            return ordered
        stats = self.stats()
        ordered.sort(key=lambda provider: stats.get(provider.id, SourceStats()).ratio, reverse=True)
        LOGGER.debug("Adaptive provider order: %s", " -> ".join(provider.id for provider in ordered))
        return ordered

    def reset(self) -> None:
        self.state.delete(SOURCE_STATS_KEY)
        self.state.schedule_save(0)
