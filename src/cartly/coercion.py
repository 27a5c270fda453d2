"""Typed accessors over loosely-shaped JSON documents.

The API does not commit to one response shape, so every semantic field is
read by trying an ordered list of candidate keys and accepting the first
value that coerces to the wanted type. Each coercion returns None instead
of raising, which lets callers chain strategies with ``or``.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, TypeVar, Union

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

JSONValue = Union[None, bool, int, float, str, list["JSONValue"], dict[str, "JSONValue"]]
JSONObject = dict[str, Any]

T = TypeVar("T")

MILLISECONDS_THRESHOLD = 1_000_000_000_000

DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def as_object(value: JSONValue) -> JSONObject | None:
    """Return ``value`` if it is a JSON object."""
    return value if isinstance(value, dict) else None


def object_list(value: JSONValue) -> list[JSONObject] | None:
    """Return ``value`` if it is an array made only of JSON objects."""
    if isinstance(value, list) and all(isinstance(item, dict) for item in value):
        return value
    return None


def normalized_string(value: JSONValue) -> str | None:
    """Trimmed string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def to_decimal(value: JSONValue) -> Decimal | None:
    """Accept a JSON number or a numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))
    text = normalized_string(value)
    if text is None:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def to_float(value: JSONValue) -> float | None:
    number = to_decimal(value)
    return float(number) if number is not None else None


def to_int(value: JSONValue) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    text = normalized_string(value)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_unix_timestamp(raw: float) -> datetime | None:
    """Interpret seconds or milliseconds since the epoch.

    Values above 10**12 are milliseconds. Non-positive values are rejected.
    """
    if not math.isfinite(raw) or raw <= 0:
        return None
    if raw > MILLISECONDS_THRESHOLD:
        raw = raw / 1_000
    try:
        return datetime.fromtimestamp(raw, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def parse_date(value: str) -> datetime | None:
    """Parse ISO-8601, a few explicit patterns, or a numeric timestamp."""
    text = value.strip()
    if not text:
        return None

    try:
        numeric = float(text)
    except ValueError:
        pass
    else:
        return parse_unix_timestamp(numeric)

    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
            except ValueError:
                continue
            break

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_datetime(value: JSONValue) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return parse_unix_timestamp(float(value))
    if isinstance(value, str):
        return parse_date(value)
    return None


def first_value(
    sources: JSONObject | Sequence[JSONObject],
    keys: Sequence[str],
    coerce: Callable[[JSONValue], T | None],
) -> T | None:
    """Try every key on every source in order; first coercible value wins."""
    if isinstance(sources, dict):
        sources = (sources,)
    for source in sources:
        for key in keys:
            if key not in source:
                continue
            value = coerce(source[key])
            if value is not None:
                return value
    return None


def first_string(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> str | None:
    return first_value(sources, keys, normalized_string)


def first_number(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> Decimal | None:
    return first_value(sources, keys, to_decimal)


def first_float(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> float | None:
    return first_value(sources, keys, to_float)


def first_int(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> int | None:
    return first_value(sources, keys, to_int)


def first_date(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> datetime | None:
    return first_value(sources, keys, to_datetime)


def first_object(sources: JSONObject | Sequence[JSONObject], keys: Sequence[str]) -> JSONObject | None:
    return first_value(sources, keys, as_object)


def response_snippet(data: bytes | str, limit: int = 2_000) -> str:
    """Single-line, truncated rendering of a response body for logs."""
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return f"<non_utf8_response bytes={len(data)}>"
    else:
        text = data
    compact = text.replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
