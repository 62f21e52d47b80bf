"""General-purpose helper utilities shared across the application."""

from __future__ import annotations

import json
import numbers
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping


__all__ = [
    "coerce_datetime",
    "coerce_int",
    "decode_name_list",
    "encode_name_list",
    "now_utc",
    "_dedupe_preserve_order",
    "_format_first_release_date",
    "_parse_iterable",
]


def now_utc() -> datetime:
    """Return the current time as an aware UTC :class:`datetime`."""

    return datetime.now(timezone.utc)


def coerce_int(value: Any) -> int | None:
    """Attempt to coerce ``value`` to an integer, returning ``None`` on failure."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        if float(value).is_integer():
            return int(value)
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except (TypeError, ValueError):
        return None


def coerce_datetime(value: Any) -> datetime | None:
    """Return ``value`` as an aware UTC :class:`datetime` when possible.

    Accepts datetimes (naive values are assumed to be UTC), POSIX timestamps
    and ISO-8601 strings. Anything else yields ``None``.
    """

    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return coerce_datetime(parsed)


def _dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def _format_first_release_date(value: Any) -> str:
    if value in (None, "", 0):
        return ""
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        try:
            timestamp = float(str(value).strip())
        except (TypeError, ValueError):
            return ""
    if timestamp <= 0:
        return ""
    try:
        dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return ""
    return dt.date().isoformat()


def _parse_iterable(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    if isinstance(value, numbers.Number):
        return [str(value)]
    try:
        iterator = iter(value)
    except TypeError:
        return [str(value)]
    items: list[str] = []
    for element in iterator:
        if isinstance(element, Mapping):
            name = element.get("name")
            if isinstance(name, str) and name.strip():
                items.append(name.strip())
            else:
                items.append(str(element).strip())
        else:
            items.append(str(element).strip())
    return [item for item in items if item]


def encode_name_list(values: Iterable[str]) -> str:
    """Serialize ``values`` for storage in a text column."""

    return json.dumps(_dedupe_preserve_order(values), ensure_ascii=False)


def decode_name_list(raw: Any) -> list[str]:
    """Inverse of :func:`encode_name_list`; tolerates legacy comma lists."""

    if raw in (None, ""):
        return []
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return _parse_iterable(raw)
        return _parse_iterable(decoded)
    return _parse_iterable(raw)
