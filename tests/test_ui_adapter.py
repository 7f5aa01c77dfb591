"""Tests for the page-outcome watcher and adapter loading."""

from __future__ import annotations

import asyncio
import json

import pytest

from autocurate.cancellation import CancellationToken
from autocurate.errors import AutomationCancelled, ConfigError
from autocurate.ui_adapter import (
    DEFAULT_VOCABULARY,
    TIMEOUT_REASON,
    OutcomeVocabulary,
    UIAdapter,
    load_adapter_factory,
)

from .conftest import FakeUIAdapter


class TestOutcomeVocabulary:
    def test_negative_phrases(self) -> None:
        assert DEFAULT_VOCABULARY.match_negative("  No matches found. ") == "no matches found."
        assert DEFAULT_VOCABULARY.match_negative("Scraper returned an Error") == "scraper returned an error"

    def test_neutral_text_is_ignored(self) -> None:
        assert DEFAULT_VOCABULARY.match_negative("Scene saved") is None
        assert DEFAULT_VOCABULARY.match_negative("") is None
        assert DEFAULT_VOCABULARY.match_negative(None) is None

    def test_reason_is_bounded(self) -> None:
        reason = DEFAULT_VOCABULARY.match_negative("error " + "x" * 500)
        assert reason is not None
        assert len(reason) == 200

    def test_custom_vocabulary(self) -> None:
        vocabulary = OutcomeVocabulary(negative_texts=("keine treffer",))
        assert vocabulary.match_negative("Keine Treffer") == "keine treffer"
        assert vocabulary.match_negative("no results") is None


class TestDetectOutcome:
    def test_fake_satisfies_protocol(self) -> None:
        assert isinstance(FakeUIAdapter(), UIAdapter)

    @pytest.mark.asyncio
    async def test_positive_signal_wins(self) -> None:
        ui = FakeUIAdapter()
        ui.elements[".modal.show .modal-dialog"] = "dialog"
        ui.messages = ["No results"]

        outcome = await ui.detect_outcome(1.0)

        assert outcome.found is True
        assert outcome.reason is None

    @pytest.mark.asyncio
    async def test_negative_message(self) -> None:
        ui = FakeUIAdapter()
        ui.messages = ["Loading", "No matches found."]

        outcome = await ui.detect_outcome(1.0)

        assert outcome.found is False
        assert outcome.reason == "no matches found."

    @pytest.mark.asyncio
    async def test_timeout_is_not_found(self) -> None:
        """Silence until the deadline is an ambiguous outcome, treated as not found."""
        outcome = await FakeUIAdapter().detect_outcome(0.05)

        assert outcome.found is False
        assert outcome.reason == TIMEOUT_REASON

    @pytest.mark.asyncio
    async def test_positive_signal_appearing_later(self) -> None:
        ui = FakeUIAdapter()

        async def show_dialog() -> None:
            await asyncio.sleep(0.03)
            ui.elements[".entity-edit-panel"] = "panel"

        task = asyncio.create_task(show_dialog())
        outcome = await ui.detect_outcome(1.0)
        await task

        assert outcome.found is True

    @pytest.mark.asyncio
    async def test_cancel_interrupts_the_wait(self) -> None:
        token = CancellationToken()
        token.cancel()

        with pytest.raises(AutomationCancelled):
            await FakeUIAdapter().detect_outcome(1.0, token=token)


class TestLoadAdapterFactory:
    def test_resolves_callable(self) -> None:
        assert load_adapter_factory("json:dumps") is json.dumps

    @pytest.mark.parametrize("reference", ["json", "json:", ":dumps"])
    def test_malformed_reference(self, reference: str) -> None:
        with pytest.raises(ConfigError, match="module:factory"):
            load_adapter_factory(reference)

    def test_missing_module(self) -> None:
        with pytest.raises(ConfigError, match="Cannot import"):
            load_adapter_factory("autocurate_missing_adapter_module:build")

    def test_missing_attribute(self) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_adapter_factory("json:no_such_factory")
