"""Confidence-ranked detection strategies and the cascade that runs them."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from ..ui_adapter import UIAdapter

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    found: bool
    confidence: int = 0
    data: Mapping[str, Any] | None = None
    strategy: str | None = None
    organized: bool | None = None
    reason: str | None = None


NOT_FOUND = DetectionResult(found=False, confidence=0)


@dataclass(frozen=True)
class ProtocolStrategy:
    """Authoritative check against the GraphQL API; its results may be cached."""

    name: str
    validator: Callable[[str], Awaitable[DetectionResult]]
    confidence: int = 100


@dataclass(frozen=True)
class DomStrategy:
    """Presence of a selector on the page."""

    name: str
    selector: str
    confidence: int


@dataclass(frozen=True)
class PageStrategy:
    """Heuristic inspection of the page through the UI adapter."""

    name: str
    inspector: Callable[[UIAdapter], DetectionResult | None]
    confidence: int


Strategy = Union[ProtocolStrategy, DomStrategy, PageStrategy]
ElementReader = Callable[["UIAdapter", Any, DomStrategy], DetectionResult]
ProtocolCache = dict[tuple[str, str], DetectionResult]


def order_strategies(strategies: Sequence[Strategy]) -> list[Strategy]:
    """Protocol strategies first, then descending confidence, ties in listed order."""
    return sorted(strategies, key=lambda item: (not isinstance(item, ProtocolStrategy), -item.confidence))


def default_element_reader(ui: UIAdapter, element: Any, strategy: DomStrategy) -> DetectionResult:
    return DetectionResult(found=True, data={"selector": strategy.selector})


async def run_cascade(
    strategies: Sequence[Strategy],
    *,
    ui: UIAdapter | None,
    entity_id: str | None,
    cache: ProtocolCache | None = None,
    read_element: ElementReader = default_element_reader,
) -> DetectionResult:
    """Try ``strategies`` until one reports a positive match.

    The winning strategy's name and confidence are stamped on the result.
    Protocol results are memoised in ``cache`` keyed by strategy name and
    entity id; page and DOM strategies always run fresh. A failing strategy
    is logged and the cascade moves on.
    """
    for strategy in order_strategies(strategies):
        try:
            result = await _evaluate(strategy, ui=ui, entity_id=entity_id, cache=cache, read_element=read_element)
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Detection strategy %s failed: %s", strategy.name, exc)
            continue
        if result is not None and result.found:
            return replace(result, confidence=strategy.confidence, strategy=strategy.name)
    return NOT_FOUND


async def _evaluate(
    strategy: Strategy,
    *,
    ui: UIAdapter | None,
    entity_id: str | None,
    cache: ProtocolCache | None,
    read_element: ElementReader,
) -> DetectionResult | None:
    if isinstance(strategy, ProtocolStrategy):
        if not entity_id:
            return None
        key = (strategy.name, entity_id)
        if cache is not None and key in cache:
            return cache[key]
        result = await strategy.validator(entity_id)
        if cache is not None:
            cache[key] = result
        return result

    if ui is None:
        return None
    if isinstance(strategy, DomStrategy):
        element = ui.query_selector(strategy.selector)
        if element is None:
            return None
        return read_element(ui, element, strategy)
    return strategy.inspector(ui)
