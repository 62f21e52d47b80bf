"""Normalized edit-distance similarity between two titles."""

from __future__ import annotations

from rapidfuzz.distance import Levenshtein

__all__ = ["similarity"]


def similarity(a: str, b: str) -> float:
    """Return ``1 - levenshtein(a, b) / max(len(a), len(b))``.

    Both arguments are expected to be normalized already. Two empty strings
    are considered identical.
    """

    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    distance = Levenshtein.distance(a, b)
    return 1.0 - distance / longest
