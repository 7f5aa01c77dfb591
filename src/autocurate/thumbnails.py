"""Thumbnail resolution comparison.

The scraped cover replaces the current one only when it is meaningfully
larger, so near-equal images do not churn on every run.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

import httpx
from PIL import Image, UnidentifiedImageError

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_IMPROVEMENT = 0.2


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    @property
    def pixels(self) -> int:
        return self.width * self.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class ThumbnailComparison:
    should_update: bool
    reason: str
    current: Resolution | None = None
    scraped: Resolution | None = None
    improvement_percent: float | None = None


def compare_resolutions(
    current: Resolution,
    scraped: Resolution,
    *,
    min_improvement: float = DEFAULT_MIN_IMPROVEMENT,
) -> ThumbnailComparison:
    """Decide whether ``scraped`` is enough of an upgrade over ``current``.

    An unknown current image (0 pixels) is always replaced by a larger one.
    """
    improvement_pixels = scraped.pixels - current.pixels
    percent = improvement_pixels / current.pixels * 100 if current.pixels > 0 else 100.0
    percent = round(percent, 1)
    larger = scraped.pixels > current.pixels

    if larger and (percent >= min_improvement * 100 or current.pixels == 0):
        reason = f"Scraped thumbnail is {percent:.1f}% larger ({scraped} vs {current})"
        return ThumbnailComparison(True, reason, current, scraped, percent)
    if larger:
        return ThumbnailComparison(False, f"Improvement {percent:.1f}% below threshold", current, scraped, percent)
    if scraped.pixels == current.pixels:
        return ThumbnailComparison(False, "Thumbnails have the same resolution", current, scraped, percent)
    return ThumbnailComparison(
        False,
        f"Current thumbnail is higher resolution ({current} vs {scraped})",
        current,
        scraped,
        percent,
    )


def resolution_from_bytes(content: bytes) -> Resolution:
    with Image.open(io.BytesIO(content)) as image:
        width, height = image.size
    return Resolution(width, height)


class ThumbnailInspector:
    """Fetches images over HTTP to measure them."""

    def __init__(self, http: httpx.AsyncClient, *, min_improvement: float = DEFAULT_MIN_IMPROVEMENT) -> None:
        self.http = http
        self.min_improvement = min_improvement

    async def resolution(self, url: str | None) -> Resolution:
        """Measure the image at ``url``; a missing URL measures as 0x0."""
        if not url:
            return Resolution(0, 0)
        response = await self.http.get(url)
        response.raise_for_status()
        return resolution_from_bytes(response.content)

    async def compare(self, current_url: str | None, scraped_url: str | None) -> ThumbnailComparison:
        if not scraped_url:
            return ThumbnailComparison(False, "No scraped thumbnail available")
        try:
            current, scraped = await asyncio.gather(self.resolution(current_url), self.resolution(scraped_url))
        except (httpx.HTTPError, UnidentifiedImageError, OSError) as exc:
            LOGGER.debug("Thumbnail comparison failed: %s", exc)
            return ThumbnailComparison(False, "Error comparing thumbnails")
        return compare_resolutions(current, scraped, min_improvement=self.min_improvement)
