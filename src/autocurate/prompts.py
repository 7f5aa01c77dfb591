"""Interactive decisions the automation asks the user for."""

from __future__ import annotations

import asyncio
import enum
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt


class ApplyChoice(str, enum.Enum):
    APPLY = "apply"
    SKIP = "skip"
    CANCEL = "cancel"


@runtime_checkable
class Prompter(Protocol):
    async def choose_apply(self, summary: str) -> ApplyChoice: ...

    async def confirm(self, question: str, *, default: bool = False) -> bool: ...


class ConsolePrompter:
    """Terminal prompts through rich; blocking reads run off the event loop."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    async def choose_apply(self, summary: str) -> ApplyChoice:
        self.console.print(Panel(summary, title="Review scraped metadata", border_style="cyan"))
        answer = await asyncio.to_thread(
            Prompt.ask,
            "Apply these changes?",
            choices=[choice.value for choice in ApplyChoice],
            default=ApplyChoice.APPLY.value,
            console=self.console,
        )
        return ApplyChoice(answer)

    async def confirm(self, question: str, *, default: bool = False) -> bool:
        return await asyncio.to_thread(Confirm.ask, question, default=default, console=self.console)


class AutoPrompter:
    """Non-interactive answers: always ``choice`` for applies, ``default`` for confirmations."""

    def __init__(self, choice: ApplyChoice = ApplyChoice.APPLY, *, confirm_answer: bool | None = None) -> None:
        self.choice = choice
        self.confirm_answer = confirm_answer

    async def choose_apply(self, summary: str) -> ApplyChoice:
        return self.choice

    async def confirm(self, question: str, *, default: bool = False) -> bool:
        return default if self.confirm_answer is None else self.confirm_answer


async def confirm_twice(prompter: Prompter, first: str, second: str) -> bool:
    """Destructive actions need two explicit yeses; both default to no."""
    if not await prompter.confirm(first, default=False):
        return False
    return await prompter.confirm(second, default=False)
