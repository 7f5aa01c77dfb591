from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from textwrap import wrap
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

LABEL_WIDTH = 20
WRAP_WIDTH = 100
INDENT = "    "

FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s\n%(message)s\n"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

Fields = Union[Mapping[str, object], Sequence[tuple[str, object]]]


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return ", ".join(_text(item) for item in value) or "(none)"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value).strip()


class LogBlock:
    """Multi-line, aligned text block for run recaps and status dumps."""

    def __init__(self, title: str, *, pad_top: bool = True) -> None:
        self._lines: list[str] = [""] if pad_top else []
        self._lines.extend([title, "-" * len(title)])

    def fields(self, fields: Fields | None) -> LogBlock:
        if not fields:
            return self
        items = list(fields.items()) if isinstance(fields, Mapping) else list(fields)
        label_width = max(8, min(LABEL_WIDTH, max(len(str(key)) for key, _ in items)))
        value_width = max(WRAP_WIDTH - len(INDENT) - label_width - 2, 32)
        for key, value in items:
            chunks = wrap(_text(value), width=value_width) or [""]
            self._lines.append(f"{INDENT}{str(key):<{label_width}}: {chunks[0]}")
            self._lines.extend(f"{INDENT}{'':<{label_width}}  {chunk}" for chunk in chunks[1:])
        return self

    def section(self, heading: str, items: Iterable[str], *, empty_label: str = "(none)") -> LogBlock:
        if self._lines and self._lines[-1] != "":
            self._lines.append("")
        self._lines.append(f"{heading}:")
        entries = [item for item in items if item]
        if not entries:
            self._lines.append(f"{INDENT}{empty_label}")
            return self
        for entry in entries:
            chunks = wrap(str(entry), width=WRAP_WIDTH - len(INDENT) - 2) or [""]
            self._lines.append(f"{INDENT}- {chunks[0]}")
            self._lines.extend(f"{INDENT}  {chunk}" for chunk in chunks[1:])
        return self

    def render(self) -> str:
        return "\n".join(self._lines).rstrip()


def render_fields_block(title: str, fields: Fields, *, pad_top: bool = True) -> str:
    return LogBlock(title, pad_top=pad_top).fields(fields).render()


def configure_logging(
    *,
    verbose: bool = False,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """Install a rich console handler and an optional plain-text file handler."""
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(level)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbose,
        markup=False,
    )
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt=FILE_DATE_FORMAT))
        root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
