"""JSON-file key-value store for state that outlives a process."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils import ensure_directory

LOGGER = logging.getLogger(__name__)

HISTORY_KEY = "history"
HASHES_KEY = "duplicate_hashes"
IGNORED_PAIRS_KEY = "duplicate_ignored_pairs"
IGNORED_GROUPS_KEY = "duplicate_ignored_groups"
PROFILES_KEY = "profiles"
SOURCE_STATS_KEY = "source_stats"
CONFIG_KEY = "config"
HEALTH_KEY = "health"
RULES_KEY = "rules"
SCHEMA_KEY = "schema"


class StateStore:
    """Persistent key-value state backed by a single JSON document.

    Values must be JSON-serialisable. Writes are explicit (:meth:`save`) or
    deferred (:meth:`schedule_save`) so that bursts of updates cost one write.
    """

    def __init__(self, state_dir: Path, filename: str = "autocurate-state.json") -> None:
        self.state_dir = state_dir
        self.state_file = state_dir / "state" / filename
        self._data: Optional[Dict[str, Any]] = None
        self._dirty = False
        self._pending: Optional[asyncio.TimerHandle] = None

    @property
    def data(self) -> Dict[str, Any]:
        if self._data is None:
            self._data = self._load()
        return self._data

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def _load(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            LOGGER.debug("State file %s not found, starting fresh", self.state_file)
            return {}

        try:
            with self.state_file.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Failed to load state from %s, starting fresh: %s", self.state_file, exc)
            return {}

        if not isinstance(data, dict):
            LOGGER.warning("Ignoring state file %s: expected a JSON object", self.state_file)
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        value = self.data.get(key)
        if value is None:
            return copy.deepcopy(default)
        return value

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value
        self._dirty = True

    def delete(self, key: str) -> bool:
        if key not in self.data:
            return False
        del self.data[key]
        self._dirty = True
        return True

    def keys(self) -> list[str]:
        return list(self.data.keys())

    def save(self) -> None:
        self._cancel_pending()
        if self._data is None or not self._dirty:
            return

        ensure_directory(self.state_file.parent)
        temp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        try:
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            os.replace(temp_file, self.state_file)
            self._dirty = False
            LOGGER.debug("Saved state to %s", self.state_file)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.warning("Failed to save state to %s: %s", self.state_file, exc)

    def schedule_save(self, delay: float) -> None:
        """Write after ``delay`` seconds of quiet, or immediately without a running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        self._cancel_pending()
        self._pending = loop.call_later(delay, self.save)

    def flush(self) -> None:
        self.save()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def storage_size(self) -> int:
        try:
            return self.state_file.stat().st_size
        except OSError:
            return 0
