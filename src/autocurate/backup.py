"""Configuration profiles and whole-state backup bundles."""

from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .config import AppConfig
from .persistence.history_store import HistoryStore
from .persistence.state_store import (
    CONFIG_KEY,
    HASHES_KEY,
    HEALTH_KEY,
    IGNORED_GROUPS_KEY,
    IGNORED_PAIRS_KEY,
    PROFILES_KEY,
    RULES_KEY,
    SCHEMA_KEY,
    StateStore,
)
from .utils import isoformat_utc, utc_now

LOGGER = logging.getLogger(__name__)

BUNDLE_VERSION = "1.0"

_AUTOMATION_KEYS = (
    "auto_organize",
    "auto_create_entities",
    "auto_apply",
    "min_auto_apply_score",
    "skip_already_scraped",
    "prefer_higher_res_thumbnails",
    "outcome_timeout",
    "adaptive_routing",
)


def apply_flat_settings(config: AppConfig, values: Mapping[str, Any]) -> list[str]:
    """Copy recognised flat keys (as produced by ``AppConfig.to_dict``) onto ``config``.

    Values whose type does not match the current setting are ignored.
    Returns the keys that were applied.
    """
    applied: list[str] = []
    for key in _AUTOMATION_KEYS:
        if key not in values:
            continue
        current = getattr(config.automation, key)
        value = values[key]
        if isinstance(current, bool):
            if not isinstance(value, bool):
                continue
        elif isinstance(current, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            value = type(current)(value)
        setattr(config.automation, key, value)
        applied.append(key)

    for provider in config.providers:
        key = f"auto_scrape_{provider.id}"
        if isinstance(values.get(key), bool):
            provider.auto_scrape = values[key]
            applied.append(key)
    return applied


class ProfileStore:
    """Named snapshots of the tunable settings."""

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def _profiles(self) -> dict[str, dict[str, Any]]:
        raw = self.state.get(PROFILES_KEY, {})
        if not isinstance(raw, dict):
            LOGGER.warning("Stored profiles are not a mapping; ignoring them")
            return {}
        return {str(name): dict(values) for name, values in raw.items() if isinstance(values, dict)}

    def list_profiles(self) -> list[str]:
        return sorted(self._profiles())

    def save_profile(self, name: str, config: AppConfig) -> dict[str, Any]:
        name = name.strip()
        if not name:
            raise ValueError("Profile name must not be empty")
        profiles = self._profiles()
        profiles[name] = config.to_dict()
        self.state.set(PROFILES_KEY, profiles)
        self.state.save()
        return profiles[name]

    def load_profile(self, name: str) -> dict[str, Any] | None:
        return self._profiles().get(name)

    def delete_profile(self, name: str) -> bool:
        profiles = self._profiles()
        if name not in profiles:
            return False
        del profiles[name]
        self.state.set(PROFILES_KEY, profiles)
        self.state.save()
        return True

    def apply_profile(self, name: str, config: AppConfig) -> list[str] | None:
        values = self.load_profile(name)
        if values is None:
            return None
        return apply_flat_settings(config, values)


class BackupManager:
    """Export and import of everything the tool persists.

    Imports tolerate missing or malformed sections and never raise; they
    report what was restored instead.
    """

    def __init__(
        self,
        state: StateStore,
        history: HistoryStore,
        config: AppConfig,
        *,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.state = state
        self.history = history
        self.config = config
        self._clock = clock

    def export_bundle(self) -> dict[str, Any]:
        return {
            "version": BUNDLE_VERSION,
            "createdAt": isoformat_utc(self._clock()),
            "data": {
                "config": self.config.to_dict(),
                "profiles": self.state.get(PROFILES_KEY, {}),
                "history": [entry.to_dict() for entry in self.history.get_all()],
                "health": self.state.get(HEALTH_KEY, {}),
                "rules": self.state.get(RULES_KEY, []),
                "schema": self.state.get(SCHEMA_KEY, {}),
                "duplicates": {
                    "hashes": self.state.get(HASHES_KEY, {}),
                    "ignoredPairs": self.state.get(IGNORED_PAIRS_KEY, []),
                    "ignoredGroups": self.state.get(IGNORED_GROUPS_KEY, []),
                },
            },
        }

    def export_json(self) -> str:
        return json.dumps(self.export_bundle(), indent=2, ensure_ascii=False)

    def import_bundle(self, payload: str | Mapping[str, Any]) -> dict[str, Any]:
        """Restore the sections present in ``payload``; returns a per-section report."""
        report: dict[str, Any] = {"ok": False, "restored": [], "skipped": []}
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                LOGGER.warning("Backup bundle is not valid JSON: %s", exc)
                report["error"] = "invalid JSON"
                return report
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping):
            LOGGER.warning("Backup bundle has no data section")
            report["error"] = "missing data section"
            return report

        def restore(section: str, key: str, expected: type) -> None:
            value = data.get(section)
            if isinstance(value, expected):
                self.state.set(key, value)
                report["restored"].append(section)
            elif value is not None:
                report["skipped"].append(section)

        if isinstance(data.get("config"), Mapping):
            self.state.set(CONFIG_KEY, dict(data["config"]))
            apply_flat_settings(self.config, data["config"])
            report["restored"].append("config")
        restore("profiles", PROFILES_KEY, dict)
        restore("health", HEALTH_KEY, dict)
        restore("rules", RULES_KEY, list)
        restore("schema", SCHEMA_KEY, dict)

        duplicates = data.get("duplicates")
        if isinstance(duplicates, Mapping):
            if isinstance(duplicates.get("hashes"), dict):
                self.state.set(HASHES_KEY, duplicates["hashes"])
            if isinstance(duplicates.get("ignoredPairs"), list):
                self.state.set(IGNORED_PAIRS_KEY, duplicates["ignoredPairs"])
            if isinstance(duplicates.get("ignoredGroups"), list):
                self.state.set(IGNORED_GROUPS_KEY, duplicates["ignoredGroups"])
            report["restored"].append("duplicates")

        history = data.get("history")
        if isinstance(history, list) and history:
            if self.history.import_history({"history": history}):
                report["restored"].append("history")
            else:
                report["skipped"].append("history")

        self.state.save()
        report["ok"] = bool(report["restored"])
        LOGGER.info(
            "Backup import restored %s",
            ", ".join(report["restored"]) or "nothing",
        )
        return report
