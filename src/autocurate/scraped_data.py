"""Scraped metadata as collected from the scraper result view, and its scoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .logging_utils import LogBlock

DETAILS_PREVIEW_LENGTH = 200


@dataclass
class ScrapedData:
    title: str | None = None
    date: str | None = None
    studio: str | None = None
    performers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    details: str | None = None
    url: str | None = None
    code: str | None = None
    thumbnail: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.title or self.date or self.studio or self.performers or self.tags or self.details or self.url
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "date": self.date,
            "studio": self.studio,
            "performers": list(self.performers),
            "tags": list(self.tags),
            "details": self.details,
            "url": self.url,
            "code": self.code,
            "thumbnail": self.thumbnail,
        }


def score_scraped_data(data: ScrapedData | None) -> int:
    """Rough 0-100 completeness score used to gate automatic apply.

    title 20, date 10, studio 15, performers 5 each up to 25, tags 2 each up
    to 10, details longer than 40 characters 10, url 5, thumbnail 5.
    """
    if data is None:
        return 0
    score = 0
    if data.title:
        score += 20
    if data.date:
        score += 10
    if data.studio:
        score += 15
    if data.performers:
        score += min(25, len(data.performers) * 5)
    if data.tags:
        score += min(10, len(data.tags) * 2)
    if data.details and len(data.details) > 40:
        score += 10
    if data.url:
        score += 5
    if data.thumbnail:
        score += 5
    return max(0, min(100, score))


def summarize_scraped_data(data: ScrapedData, *, provider_name: str, thumbnail_note: str | None = None) -> str:
    """Plain-text summary shown before the user confirms an apply."""
    details = data.details or ""
    if len(details) > DETAILS_PREVIEW_LENGTH:
        details = details[:DETAILS_PREVIEW_LENGTH] + "..."
    block = LogBlock(f"Scraped data from {provider_name}", pad_top=False).fields(
        [
            ("Title", data.title or "(none)"),
            ("Date", data.date or "(none)"),
            ("Studio", data.studio or "(none)"),
            ("Performers", data.performers),
            ("Tags", data.tags),
            ("Details", details or "(none)"),
            ("Thumbnail", thumbnail_note or ("available" if data.thumbnail else "(none)")),
            ("Completeness", f"{score_scraped_data(data)}/100"),
        ]
    )
    return block.render()
