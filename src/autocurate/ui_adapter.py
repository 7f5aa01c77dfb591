"""Contract between the automation core and whatever drives the host UI.

The orchestrator only talks to the page through :class:`UIAdapter`. Concrete
adapters (a browser-automation driver, a test fake) live outside the core and
are loaded by the CLI from a ``module:factory`` reference.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .errors import ConfigError

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .config import ProviderSettings
    from .scraped_data import ScrapedData

LOGGER = logging.getLogger(__name__)

OUTCOME_POLL_INTERVAL = 0.15
OUTCOME_REASON_LENGTH = 200
TIMEOUT_REASON = "timeout waiting for scraper outcome"


@dataclass(frozen=True)
class Outcome:
    """Result of watching the page after a scrape was triggered."""

    found: bool
    reason: str | None = None


@dataclass(frozen=True)
class OutcomeVocabulary:
    """Signals that tell a scrape succeeded or failed.

    Swappable per host UI version without touching the orchestrator.
    """

    positive_selectors: tuple[str, ...] = (
        ".modal.show .modal-dialog",
        ".entity-edit-panel",
        ".scene-edit-details",
        ".edit-panel",
    )
    negative_selectors: tuple[str, ...] = (
        ".toast.show, .Toastify__toast, .alert, .notification",
        ".modal.show .modal-body",
        ".empty, .no-results, .text-muted, .text-warning",
    )
    negative_texts: tuple[str, ...] = (
        "no results",
        "no matches",
        "not found",
        "nothing found",
        "failed",
        "error",
        "could not",
        "unable to",
        "empty",
    )

    def match_negative(self, text: str | None) -> str | None:
        """Return the normalised reason when ``text`` reads as a failure."""
        lowered = (text or "").strip().lower()
        if not lowered:
            return None
        if any(phrase in lowered for phrase in self.negative_texts):
            return lowered[:OUTCOME_REASON_LENGTH]
        return None


DEFAULT_VOCABULARY = OutcomeVocabulary()


@dataclass
class OrganizeToggle:
    checked: bool
    toggle: Callable[[], Awaitable[None]] = field(repr=False)


@runtime_checkable
class UIAdapter(Protocol):
    """Capabilities the automation core needs from the host page.

    Waiting methods raise :class:`~autocurate.errors.OperationTimeoutError`
    when their deadline passes. Elements are opaque handles owned by the
    adapter.
    """

    def current_entity_id(self) -> str | None: ...

    def current_location(self) -> str | None: ...

    def query_selector(self, selector: str) -> Any | None: ...

    def is_element_active(self, element: Any) -> bool: ...

    def page_text(self) -> str: ...

    async def wait_for_element(self, selectors: Sequence[str], timeout: float) -> Any: ...

    async def click_element(self, element: Any) -> None: ...

    def is_edit_context_open(self) -> bool: ...

    async def open_edit_context(self) -> bool: ...

    async def trigger_scrape(self, provider: ProviderSettings) -> None: ...

    async def detect_outcome(
        self,
        timeout: float,
        vocabulary: OutcomeVocabulary = DEFAULT_VOCABULARY,
        token: CancellationToken | None = None,
    ) -> Outcome: ...

    def find_create_affordances(self) -> list[Any]: ...

    def find_apply_affordance(self) -> Any | None: ...

    def find_save_affordance(self) -> Any | None: ...

    def find_organize_toggle(self) -> OrganizeToggle | None: ...

    async def collect_scraped_data(self) -> ScrapedData: ...

    def current_thumbnail_url(self) -> str | None: ...

    async def keep_current_thumbnail(self) -> None:
        """Drop the scraped cover from the pending edit so the current one is saved."""
        ...

    def restore_controls(self) -> None: ...


class PollingOutcomeMixin:
    """``detect_outcome`` built on two cheap page checks.

    Subclasses provide ``query_selector`` and :meth:`visible_messages`. A
    positive selector wins immediately; otherwise the first visible message
    containing a negative phrase ends the wait; after ``timeout`` the outcome
    is an ambiguous "not found".
    """

    poll_interval: float = OUTCOME_POLL_INTERVAL

    def query_selector(self, selector: str) -> Any | None:  # pragma: no cover - provided by the adapter
        raise NotImplementedError

    def visible_messages(self, selectors: Sequence[str]) -> list[str]:  # pragma: no cover - provided by the adapter
        raise NotImplementedError

    def has_positive_signal(self, vocabulary: OutcomeVocabulary) -> bool:
        return any(self.query_selector(selector) is not None for selector in vocabulary.positive_selectors)

    async def detect_outcome(
        self,
        timeout: float,
        vocabulary: OutcomeVocabulary = DEFAULT_VOCABULARY,
        token: CancellationToken | None = None,
    ) -> Outcome:
        deadline = time.monotonic() + timeout
        if self.has_positive_signal(vocabulary):
            return Outcome(found=True)

        while time.monotonic() < deadline:
            if token is not None:
                token.check()
            if self.has_positive_signal(vocabulary):
                return Outcome(found=True)
            for message in self.visible_messages(vocabulary.negative_selectors):
                reason = vocabulary.match_negative(message)
                if reason:
                    return Outcome(found=False, reason=reason)
            await asyncio.sleep(min(self.poll_interval, max(deadline - time.monotonic(), 0)))

        LOGGER.debug("No scraper outcome within %.1fs", timeout)
        return Outcome(found=False, reason=TIMEOUT_REASON)


AdapterFactory = Callable[..., UIAdapter]


def load_adapter_factory(reference: str) -> AdapterFactory:
    """Resolve ``package.module:callable`` into an adapter factory."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigError(f"Adapter reference must look like 'module:factory', got: {reference}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import adapter module '{module_name}': {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigError(f"Adapter factory '{attribute}' not found in '{module_name}'")
    return factory
