"""Page-side detection strategies for metadata providers and the organized flag."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from ..config import ProviderSettings
from .strategies import DetectionResult, DomStrategy, PageStrategy, Strategy

if TYPE_CHECKING:
    from ..ui_adapter import UIAdapter

ORGANIZED_ASPECT = "organized"

ORGANIZED_SELECTORS: tuple[tuple[str, str, int], ...] = (
    ("organized_button_primary", 'button[title="Organized"].organized-button', 100),
    ("organized_button_title", 'button[title="Organized"]', 95),
    ("organized_button_minimal", "button.minimal.organized-button", 95),
    ("organized_button_class", "button.organized-button", 90),
    ("organized_checkbox", 'input[type="checkbox"][name*="organized"]', 85),
)

ORGANIZED_INDICATOR_SELECTORS: tuple[str, ...] = (
    'button[title="Organized"].organized-button',
    'button[title="Organized"]',
    "button.organized-button",
    'input[type="checkbox"][name*="organized" i]',
)


def _text_indicators(provider: ProviderSettings) -> list[re.Pattern[str]]:
    terms = [provider.id, *provider.endpoint_markers]
    patterns = [re.compile(re.escape(term), re.IGNORECASE) for term in terms if term]
    patterns.append(re.compile(rf"{re.escape(provider.id)}[_-]?id", re.IGNORECASE))
    return patterns


def _metadata_inspector(provider: ProviderSettings):
    patterns = _text_indicators(provider)

    def inspect(ui: UIAdapter) -> DetectionResult | None:
        text = ui.page_text() or ""
        matched = [pattern.pattern for pattern in patterns if pattern.search(text)]
        if not matched:
            return None
        return DetectionResult(found=True, data={"detected_patterns": matched})

    return inspect


def provider_strategies(provider: ProviderSettings) -> list[Strategy]:
    """Page strategies for one provider, strongest first.

    Configured selectors are merged in and ordered by their confidence.
    """
    pid = provider.id
    strategies: list[Strategy] = [
        DomStrategy(f"{pid}_url", f'[data-source="{pid}"]', 95),
        DomStrategy(f"{pid}_id", f"[data-{pid}-id]", 90),
        DomStrategy(f"{pid}_reference", f'.scraper-result[data-scraper*="{pid}"]', 85),
    ]
    for index, selector in enumerate(provider.selectors):
        strategies.append(DomStrategy(selector.name or f"{pid}_custom_{index}", selector.selector, selector.confidence))
    strategies.append(PageStrategy(f"{pid}_metadata", _metadata_inspector(provider), 75))
    return strategies


def _organized_indicator(ui: UIAdapter) -> DetectionResult | None:
    for selector in ORGANIZED_INDICATOR_SELECTORS:
        element = ui.query_selector(selector)
        if element is not None:
            return DetectionResult(found=True, organized=ui.is_element_active(element), data={"selector": selector})
    return None


def organized_strategies() -> list[Strategy]:
    strategies: list[Strategy] = [DomStrategy(name, selector, confidence) for name, selector, confidence in ORGANIZED_SELECTORS]
    strategies.append(PageStrategy("organized_indicator", _organized_indicator, 75))
    return strategies


def menu_matches(provider: ProviderSettings, label: str) -> bool:
    """Whether a scraper menu entry labelled ``label`` belongs to ``provider``."""
    lowered = label.strip().lower()
    keywords = provider.menu_keywords or [provider.id, provider.name.lower()]
    return any(keyword in lowered for keyword in keywords)
