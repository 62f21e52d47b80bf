"""Title normalization used by every matching layer.

Platform storefronts decorate titles with platform tags, trademark glyphs,
edition names and build markers that the catalog does not carry. The
normalizer reduces a raw title to a comparison-safe string:

1. lower-case
2. strip parenthetical platform qualifiers, e.g. ``(PlayStation®5)``
3. strip leading/trailing platform tokens and their conjunctions (``& PS5``)
4. strip trademark glyphs
5. replace ``:``, ``-`` and dashes with spaces, drop other punctuation
6. strip region/build suffixes (``beta``, ``demo``, ``early access``, ``eu``)
7. strip edition suffixes (``deluxe edition``, ``goty``)
8. collapse whitespace and trim

The steps are repeated until the output is stable so that
``normalize(normalize(x)) == normalize(x)`` holds for every input.
"""

from __future__ import annotations

import re
from typing import Iterable

__all__ = [
    "DEFAULT_BUILD_SUFFIXES",
    "DEFAULT_EDITION_SUFFIXES",
    "DEFAULT_PLATFORM_TOKENS",
    "TitleNormalizer",
    "configure_default_normalizer",
    "core_title",
    "normalize",
    "simplify_title",
]

DEFAULT_PLATFORM_TOKENS: tuple[str, ...] = (
    r"playstation\s*(?:[1-5]|vita|portable|vr2?)?",
    r"ps\s*[1-5]",
    r"ps\s*vita",
    r"psp",
    r"xbox\s*series\s*x\s*(?:\|\s*s|/\s*s|and\s*s)?",
    r"xbox\s*series\s*s",
    r"xbox\s*(?:one|360)?",
    r"nintendo\s*switch(?:\s*2)?",
    r"pc",
    r"windows(?:\s*(?:10|11))?",
)

DEFAULT_BUILD_SUFFIXES: tuple[str, ...] = (
    "open beta",
    "closed beta",
    "beta",
    "alpha",
    "demo",
    "early access",
    "playtest",
    "na",
    "eu",
    "jp",
)

DEFAULT_EDITION_SUFFIXES: tuple[str, ...] = (
    "game of the year edition",
    "game of the year",
    "goty edition",
    "goty",
    "digital deluxe edition",
    "deluxe edition",
    "ultimate edition",
    "gold edition",
    "complete edition",
    "definitive edition",
    "standard edition",
    "premium edition",
    "special edition",
    "enhanced edition",
    "anniversary edition",
    "legendary edition",
    "collectors edition",
    "digital edition",
    "edition",
)

_TRADEMARKS_RE = re.compile(r"[™®©]")
_PARENTHETICAL_RE = re.compile(r"\(([^()]*)\)|\[([^\[\]]*)\]")
_SEPARATORS_RE = re.compile(r"[:\-–—]")
_QUOTES_RE = re.compile(r"[’‘'`\"]")
_PUNCTUATION_RE = re.compile(r"[^\w\s&+]")
_WHITESPACE_RE = re.compile(r"\s+")
_CONJUNCTION = r"(?:[&/|,+]|\band\b)"


def _alternation(patterns: Iterable[str]) -> str:
    return "|".join(f"(?:{pattern})" for pattern in patterns)


class TitleNormalizer:
    """Configurable, deterministic title normalizer."""

    def __init__(
        self,
        *,
        platform_tokens: Iterable[str] = DEFAULT_PLATFORM_TOKENS,
        build_suffixes: Iterable[str] = DEFAULT_BUILD_SUFFIXES,
        edition_suffixes: Iterable[str] = DEFAULT_EDITION_SUFFIXES,
    ) -> None:
        tokens = _alternation(platform_tokens)
        self._platform_token_re = re.compile(rf"\b(?:{tokens})\b", re.IGNORECASE)
        self._trailing_platform_re = re.compile(
            rf"(?:\s*(?:[\-–—:]|{_CONJUNCTION})?\s*\b(?:{tokens}))+\s*$"
        )
        self._leading_platform_re = re.compile(
            rf"^\s*(?:{tokens})\s*(?:[\-–—:|]|{_CONJUNCTION})\s*"
        )
        # Longest suffixes first so "deluxe edition" wins over "edition".
        builds = sorted({b.strip().lower() for b in build_suffixes if b.strip()}, key=len, reverse=True)
        editions = sorted({e.strip().lower() for e in edition_suffixes if e.strip()}, key=len, reverse=True)
        self._build_suffix_re = re.compile(
            rf"\s+(?:{_alternation(re.escape(b) for b in builds)})\s*$"
        ) if builds else None
        self._edition_suffix_re = re.compile(
            rf"\s+(?:{_alternation(re.escape(e) for e in editions)})\s*$"
        ) if editions else None

    def normalize(self, raw: str | None) -> str:
        """Return the comparison-safe form of ``raw``."""

        if not raw:
            return ""
        value = str(raw)
        while True:
            reduced = self._normalize_once(value)
            if reduced == value:
                return value
            value = reduced

    def strip_platform_tokens(self, value: str) -> str:
        """Remove leading/trailing platform tokens without other normalization."""

        previous = None
        while previous != value:
            previous = value
            value = self._trailing_platform_re.sub("", value)
            value = self._leading_platform_re.sub("", value)
        return value.strip()

    def strip_platform_parentheticals(self, value: str) -> str:
        """Blank out bracketed groups that name a platform, e.g. "(PC)"."""

        return _PARENTHETICAL_RE.sub(self._strip_platform_parenthetical, value)

    def _normalize_once(self, value: str) -> str:
        value = value.lower()
        value = self.strip_platform_parentheticals(value)
        value = self.strip_platform_tokens(value)
        value = _TRADEMARKS_RE.sub("", value)
        value = _SEPARATORS_RE.sub(" ", value)
        value = _QUOTES_RE.sub("", value)
        value = _PUNCTUATION_RE.sub(" ", value)
        value = _WHITESPACE_RE.sub(" ", value)
        if self._build_suffix_re is not None:
            value = self._build_suffix_re.sub("", value)
        if self._edition_suffix_re is not None:
            value = self._edition_suffix_re.sub("", value)
        return _WHITESPACE_RE.sub(" ", value).strip()

    def _strip_platform_parenthetical(self, match: re.Match[str]) -> str:
        inner = match.group(1) if match.group(1) is not None else match.group(2)
        inner = _TRADEMARKS_RE.sub("", inner or "")
        if self._platform_token_re.search(inner):
            return " "
        return match.group(0)


_default_normalizer = TitleNormalizer()


def configure_default_normalizer(normalizer: TitleNormalizer) -> None:
    """Replace the module-level normalizer used by :func:`normalize`."""

    global _default_normalizer
    _default_normalizer = normalizer


def normalize(raw: str | None) -> str:
    """Normalize ``raw`` with the module-level :class:`TitleNormalizer`."""

    return _default_normalizer.normalize(raw)


def simplify_title(raw: str | None) -> str:
    """Return the text before the first ``:``, or ``""`` when there is none."""

    if not raw or ":" not in raw:
        return ""
    return raw.split(":", 1)[0].strip()


_CORE_SEPARATORS_RE = re.compile(r"\s*(?::|\s[\-–—]\s)")


def core_title(raw: str | None) -> str:
    """Return a shortened search key for ``raw``.

    The core title is the text before the first separator (``:`` or a spaced
    dash) with leading/trailing platform tokens removed; trademark glyphs are
    dropped so that storefront decorations do not multiply search keys.
    """

    if not raw:
        return ""
    head = _CORE_SEPARATORS_RE.split(str(raw), maxsplit=1)[0]
    head = _TRADEMARKS_RE.sub("", head)
    head = _default_normalizer.strip_platform_parentheticals(head)
    head = _WHITESPACE_RE.sub(" ", head).strip()
    stripped = _strip_platform_tokens_preserving_case(head)
    return stripped or head


def _strip_platform_tokens_preserving_case(value: str) -> str:
    lowered = value.lower()
    reduced = _default_normalizer.strip_platform_tokens(lowered)
    if reduced == lowered.strip():
        return value.strip()
    start = lowered.find(reduced)
    if start < 0 or not reduced:
        return ""
    return value[start:start + len(reduced)].strip()
