from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .utils import env_bool, load_yaml_file, validate_url

DEFAULT_STATE_DIR = Path("~/.local/state/autocurate").expanduser()

ACCURACY_TIERS: dict[str, int] = {
    "exact": 0,
    "high": 4,
    "medium": 8,
    "low": 10,
}


@dataclass
class StashSettings:
    """Connection settings for the Stash GraphQL endpoint."""

    url: str = "http://localhost:9999"
    api_key: str | None = None
    timeout: float = 10.0
    query_cache_ttl: float = 30.0
    scene_cache_ttl: float = 5.0

    @property
    def graphql_url(self) -> str:
        return self.url.rstrip("/") + "/graphql"


@dataclass
class SelectorSettings:
    selector: str
    confidence: int
    name: str | None = None


@dataclass
class ProviderSettings:
    id: str
    name: str
    endpoint_markers: list[str] = field(default_factory=list)
    menu_keywords: list[str] = field(default_factory=list)
    auto_scrape: bool = True
    selectors: list[SelectorSettings] = field(default_factory=list)


@dataclass
class AutomationSettings:
    auto_organize: bool = True
    auto_create_entities: bool = True
    auto_apply: bool = False
    min_auto_apply_score: int = 60
    skip_already_scraped: bool = True
    prefer_higher_res_thumbnails: bool = True
    thumbnail_min_improvement: float = 0.2
    outcome_timeout: float = 8.0  # Ambiguous outcome after this long counts as "not found"
    settle_delay: float = 0.5
    create_settle_delay: float = 0.3
    save_fallback_timeout: float = 3.0
    refresh_delay: float = 1.0
    adaptive_routing: bool = False
    organize_requires_all_providers: bool = True


@dataclass
class HistorySettings:
    max_entries: int = 1000
    retention_days: int = 30
    flush_delay: float = 1.0


@dataclass
class DuplicateSettings:
    threshold: int = 10
    accuracy: str = "high"
    duration_diff: float = 1.0
    scan_limit: int = 500
    per_page: int = 100

    @property
    def distance(self) -> int:
        return ACCURACY_TIERS[self.accuracy]


@dataclass
class NotificationSettings:
    webhook_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class AppConfig:
    stash: StashSettings = field(default_factory=StashSettings)
    automation: AutomationSettings = field(default_factory=AutomationSettings)
    providers: list[ProviderSettings] = field(default_factory=list)
    history: HistorySettings = field(default_factory=HistorySettings)
    duplicates: DuplicateSettings = field(default_factory=DuplicateSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    state_dir: Path = DEFAULT_STATE_DIR

    def provider(self, provider_id: str) -> ProviderSettings | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def to_dict(self) -> dict[str, Any]:
        """Flat view of the tunable settings, used for backups and profiles."""
        automation = self.automation
        return {
            "stash_url": self.stash.url,
            "timeout": self.stash.timeout,
            "auto_organize": automation.auto_organize,
            "auto_create_entities": automation.auto_create_entities,
            "auto_apply": automation.auto_apply,
            "min_auto_apply_score": automation.min_auto_apply_score,
            "skip_already_scraped": automation.skip_already_scraped,
            "prefer_higher_res_thumbnails": automation.prefer_higher_res_thumbnails,
            "outcome_timeout": automation.outcome_timeout,
            "adaptive_routing": automation.adaptive_routing,
            **{f"auto_scrape_{provider.id}": provider.auto_scrape for provider in self.providers},
        }


def default_providers() -> list[ProviderSettings]:
    return [
        ProviderSettings(
            id="stashdb",
            name="StashDB",
            endpoint_markers=["stashdb.org"],
            menu_keywords=["stashdb", "stash-box"],
        ),
        ProviderSettings(
            id="theporndb",
            name="ThePornDB",
            endpoint_markers=["metadataapi.net", "theporndb"],
            menu_keywords=["theporndb", "tpdb", "metadataapi"],
        ),
    ]


def _as_float(data: dict[str, Any], key: str, default: float, field_name: str, *, minimum: float = 0.0) -> float:
    raw = data.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{field_name}' must be a number") from exc
    if value < minimum:
        raise ConfigError(f"'{field_name}' must be greater than or equal to {minimum:g}")
    return value


def _as_int(data: dict[str, Any], key: str, default: int, field_name: str, *, minimum: int = 0) -> int:
    raw = data.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{field_name}' must be an integer") from exc
    if value < minimum:
        raise ConfigError(f"'{field_name}' must be greater than or equal to {minimum}")
    return value


def _ensure_mapping(data: Any, field_name: str) -> dict[str, Any]:
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{field_name}' must be provided as a mapping when specified")
    return data


def _ensure_string_list(value: Any, *, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{field_name}' must be provided as a list of strings")
    result: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise ConfigError(f"'{field_name}[{index}]' must be a string")
        if item.strip():
            result.append(item.strip())
    return result


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _build_stash_settings(data: Any) -> StashSettings:
    data = _ensure_mapping(data, "stash")
    url = _clean_str(data.get("url")) or StashSettings.url
    if not validate_url(url):
        raise ConfigError(f"'stash.url' must be a valid http/https URL, got: {url}")
    return StashSettings(
        url=url,
        api_key=_clean_str(data.get("api_key")),
        timeout=_as_float(data, "timeout", 10.0, "stash.timeout", minimum=0.1),
        query_cache_ttl=_as_float(data, "query_cache_ttl", 30.0, "stash.query_cache_ttl"),
        scene_cache_ttl=_as_float(data, "scene_cache_ttl", 5.0, "stash.scene_cache_ttl"),
    )


def _build_selector(data: Any, field_name: str) -> SelectorSettings:
    if not isinstance(data, dict):
        raise ConfigError(f"'{field_name}' must be a mapping with 'selector' and 'confidence'")
    selector = _clean_str(data.get("selector"))
    if not selector:
        raise ConfigError(f"'{field_name}.selector' is required")
    confidence = _as_int(data, "confidence", 75, f"{field_name}.confidence")
    if confidence > 100:
        raise ConfigError(f"'{field_name}.confidence' must be between 0 and 100")
    return SelectorSettings(selector=selector, confidence=confidence, name=_clean_str(data.get("name")))


def _build_provider_settings(data: Any, index: int) -> ProviderSettings:
    field_name = f"providers[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"'{field_name}' must be a mapping")
    provider_id = _clean_str(data.get("id"))
    if not provider_id:
        raise ConfigError(f"'{field_name}' is missing required 'id' field")
    selectors_raw = data.get("selectors") or []
    if not isinstance(selectors_raw, list):
        raise ConfigError(f"'{field_name}.selectors' must be provided as a list when specified")
    markers = [
        marker.lower()
        for marker in _ensure_string_list(data.get("endpoint_markers"), field_name=f"{field_name}.endpoint_markers")
    ]
    return ProviderSettings(
        id=provider_id.lower(),
        name=_clean_str(data.get("name")) or provider_id,
        # Without explicit markers the id itself must appear in the endpoint URL.
        endpoint_markers=markers or [provider_id.lower()],
        menu_keywords=[
            keyword.lower()
            for keyword in _ensure_string_list(data.get("menu_keywords"), field_name=f"{field_name}.menu_keywords")
        ],
        auto_scrape=bool(data.get("auto_scrape", True)),
        selectors=[
            _build_selector(item, f"{field_name}.selectors[{position}]") for position, item in enumerate(selectors_raw)
        ],
    )


def _build_providers(data: Any) -> list[ProviderSettings]:
    if data is None:
        return default_providers()
    if not isinstance(data, list):
        raise ConfigError("'providers' must be provided as a list when specified")
    providers = [_build_provider_settings(item, index) for index, item in enumerate(data)]
    seen: set[str] = set()
    for provider in providers:
        if provider.id in seen:
            raise ConfigError(f"Duplicate provider id '{provider.id}'")
        seen.add(provider.id)
    return providers


def _build_automation_settings(data: Any) -> AutomationSettings:
    data = _ensure_mapping(data, "automation")
    defaults = AutomationSettings()
    min_score = _as_int(data, "min_auto_apply_score", defaults.min_auto_apply_score, "automation.min_auto_apply_score")
    if min_score > 100:
        raise ConfigError("'automation.min_auto_apply_score' must be between 0 and 100")
    return AutomationSettings(
        auto_organize=bool(data.get("auto_organize", defaults.auto_organize)),
        auto_create_entities=bool(data.get("auto_create_entities", defaults.auto_create_entities)),
        auto_apply=bool(data.get("auto_apply", defaults.auto_apply)),
        min_auto_apply_score=min_score,
        skip_already_scraped=bool(data.get("skip_already_scraped", defaults.skip_already_scraped)),
        prefer_higher_res_thumbnails=bool(
            data.get("prefer_higher_res_thumbnails", defaults.prefer_higher_res_thumbnails)
        ),
        thumbnail_min_improvement=_as_float(
            data, "thumbnail_min_improvement", defaults.thumbnail_min_improvement, "automation.thumbnail_min_improvement"
        ),
        outcome_timeout=_as_float(
            data, "outcome_timeout", defaults.outcome_timeout, "automation.outcome_timeout", minimum=0.1
        ),
        settle_delay=_as_float(data, "settle_delay", defaults.settle_delay, "automation.settle_delay"),
        create_settle_delay=_as_float(
            data, "create_settle_delay", defaults.create_settle_delay, "automation.create_settle_delay"
        ),
        save_fallback_timeout=_as_float(
            data, "save_fallback_timeout", defaults.save_fallback_timeout, "automation.save_fallback_timeout"
        ),
        refresh_delay=_as_float(data, "refresh_delay", defaults.refresh_delay, "automation.refresh_delay"),
        adaptive_routing=bool(data.get("adaptive_routing", defaults.adaptive_routing)),
        organize_requires_all_providers=bool(
            data.get("organize_requires_all_providers", defaults.organize_requires_all_providers)
        ),
    )


def _build_history_settings(data: Any) -> HistorySettings:
    data = _ensure_mapping(data, "history")
    return HistorySettings(
        max_entries=_as_int(data, "max_entries", 1000, "history.max_entries", minimum=1),
        retention_days=_as_int(data, "retention_days", 30, "history.retention_days", minimum=1),
        flush_delay=_as_float(data, "flush_delay", 1.0, "history.flush_delay"),
    )


def _build_duplicate_settings(data: Any) -> DuplicateSettings:
    data = _ensure_mapping(data, "duplicates")
    accuracy = str(data.get("accuracy", "high")).strip().lower()
    if accuracy not in ACCURACY_TIERS:
        raise ConfigError(
            f"'duplicates.accuracy' must be one of {', '.join(ACCURACY_TIERS)}, got: {accuracy}"
        )
    threshold = _as_int(data, "threshold", 10, "duplicates.threshold")
    if threshold > 64:
        raise ConfigError("'duplicates.threshold' must be between 0 and 64")
    return DuplicateSettings(
        threshold=threshold,
        accuracy=accuracy,
        duration_diff=_as_float(data, "duration_diff", 1.0, "duplicates.duration_diff"),
        scan_limit=_as_int(data, "scan_limit", 500, "duplicates.scan_limit", minimum=2),
        per_page=_as_int(data, "per_page", 100, "duplicates.per_page", minimum=1),
    )


def _build_notification_settings(data: Any) -> NotificationSettings:
    data = _ensure_mapping(data, "notifications")
    webhook_url = _clean_str(data.get("webhook_url"))
    if webhook_url and not validate_url(webhook_url):
        raise ConfigError(f"'notifications.webhook_url' must be a valid http/https URL, got: {webhook_url}")
    headers = _ensure_mapping(data.get("headers"), "notifications.headers")
    return NotificationSettings(
        webhook_url=webhook_url,
        headers={str(key): str(value) for key, value in headers.items()},
    )


def build_config(data: dict[str, Any]) -> AppConfig:
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")
    state_dir_raw = _clean_str(data.get("state_dir"))
    config = AppConfig(
        stash=_build_stash_settings(data.get("stash")),
        automation=_build_automation_settings(data.get("automation")),
        providers=_build_providers(data.get("providers")),
        history=_build_history_settings(data.get("history")),
        duplicates=_build_duplicate_settings(data.get("duplicates")),
        notifications=_build_notification_settings(data.get("notifications")),
        state_dir=Path(state_dir_raw).expanduser() if state_dir_raw else DEFAULT_STATE_DIR,
    )
    apply_env_overrides(config)
    return config


def apply_env_overrides(config: AppConfig) -> None:
    url = _clean_str(os.getenv("STASH_URL"))
    if url:
        if not validate_url(url):
            raise ConfigError(f"STASH_URL must be a valid http/https URL, got: {url}")
        config.stash.url = url
    api_key = _clean_str(os.getenv("STASH_API_KEY"))
    if api_key:
        config.stash.api_key = api_key
    auto_apply = env_bool("AUTOCURATE_AUTO_APPLY")
    if auto_apply is not None:
        config.automation.auto_apply = auto_apply


def load_config(path: Path | None) -> AppConfig:
    if path is None:
        return build_config({})
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    return build_config(load_yaml_file(path))
