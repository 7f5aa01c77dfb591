"""Perceptual average hash over scene screenshots."""

from __future__ import annotations

import io

from PIL import Image

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE


def average_hash(image_bytes: bytes) -> str:
    """64-character bitstring: ``1`` where a pixel of the 8x8 grayscale thumbnail is brighter than the mean.

    Raises:
        PIL.UnidentifiedImageError: ``image_bytes`` is not a decodable image.
    """
    with Image.open(io.BytesIO(image_bytes)) as image:
        small = image.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.Resampling.BILINEAR)
        pixels = list(small.getdata())
    mean = sum(pixels) / len(pixels)
    return "".join("1" if pixel > mean else "0" for pixel in pixels)


def hamming_distance(first: str, second: str) -> int:
    """Differing positions; a length mismatch counts every extra position."""
    distance = sum(1 for a, b in zip(first, second) if a != b)
    return distance + abs(len(first) - len(second))


def similarity_score(distance: int, bits: int = HASH_BITS) -> int:
    return round(max(0, bits - distance) / bits * 100)
