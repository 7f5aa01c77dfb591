"""Exception hierarchy shared by the automation, detection and duplicate layers."""

from __future__ import annotations

MAX_ERROR_LENGTH = 200


def truncate_error(message: object, limit: int = MAX_ERROR_LENGTH) -> str:
    """Return ``message`` as text no longer than ``limit`` characters."""
    text = str(message) if message is not None else ""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit]


class AutocurateError(Exception):
    """Base exception for autocurate errors."""


class OperationTimeoutError(AutocurateError, TimeoutError):
    """A wait or request exceeded its deadline."""

    def __init__(self, message: str, *, timeout: float | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class QueryTimeoutError(OperationTimeoutError):
    """A GraphQL request did not complete within the configured timeout."""


class TransportError(AutocurateError):
    """Network-level failure talking to the Stash server."""


class ProtocolError(AutocurateError):
    """The server answered with an error payload.

    ``messages`` holds the individual GraphQL error messages when the server
    returned an ``errors`` array.
    """

    def __init__(self, message: str, *, messages: list[str] | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.messages = list(messages or [])
        self.status_code = status_code


class NavigationError(AutocurateError):
    """The UI moved to another scene while a run was operating on it."""

    def __init__(self, expected: str | None, actual: str | None) -> None:
        super().__init__(f"Navigated away from scene {expected} (now on {actual or 'unknown'})")
        self.expected = expected
        self.actual = actual


class StateValidationError(AutocurateError, ValueError):
    """Persisted data failed shape validation."""


class AutomationBusyError(AutocurateError):
    """A run was requested while another run is in progress."""


class ConfigError(AutocurateError, ValueError):
    """Invalid configuration value."""


class AutomationCancelled(AutocurateError):
    """Cooperative signal: the user cancelled the whole run."""


class SourceSkipped(AutocurateError):
    """Cooperative signal: the user skipped the provider being processed."""


__all__ = [
    "AutocurateError",
    "AutomationBusyError",
    "AutomationCancelled",
    "ConfigError",
    "MAX_ERROR_LENGTH",
    "NavigationError",
    "OperationTimeoutError",
    "ProtocolError",
    "QueryTimeoutError",
    "SourceSkipped",
    "StateValidationError",
    "TransportError",
    "truncate_error",
]
