"""Observable state of the automation session."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .cancellation import CancellationToken


class RunState(str, enum.Enum):
    IDLE = "idle"
    OPENING_EDIT_CONTEXT = "opening_edit_context"
    CHECKING_STATUS = "checking_status"
    SCRAPING = "scraping"
    CREATING_ENTITIES = "creating_entities"
    APPLYING = "applying"
    SKIP_PROVIDER = "skip_provider"
    SAVING = "saving"
    ORGANIZING = "organizing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class RescrapeOptions:
    """Providers the user wants scraped again even if already satisfied."""

    per_provider_force: set[str] = field(default_factory=set)

    @property
    def force_rescrape(self) -> bool:
        return bool(self.per_provider_force)

    def is_forced(self, provider_id: str) -> bool:
        return provider_id in self.per_provider_force


@dataclass
class SessionState:
    in_progress: bool = False
    state: RunState = RunState.IDLE
    current_provider: str | None = None
    rescrape: RescrapeOptions = field(default_factory=RescrapeOptions)
    token: CancellationToken | None = None

    @property
    def cancelled(self) -> bool:
        return bool(self.token and self.token.cancelled)

    @property
    def skip_current_source_requested(self) -> bool:
        return bool(self.token and self.token.skip_requested)

    def start(self, rescrape: RescrapeOptions | None = None) -> CancellationToken:
        self.reset()
        self.in_progress = True
        self.rescrape = rescrape or RescrapeOptions()
        self.token = CancellationToken()
        return self.token

    def transition(self, state: RunState, provider: str | None = None) -> None:
        self.state = state
        self.current_provider = provider

    def reset(self) -> None:
        self.in_progress = False
        self.state = RunState.IDLE
        self.current_provider = None
        self.rescrape = RescrapeOptions()
        self.token = None
