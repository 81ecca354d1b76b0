"""Tolerant text and number parsing shared by every extraction strategy.

The exchange renders numbers inconsistently across its JSON endpoints and
HTML tables: thousands separators, "Rs." prefixes, trailing asterisks,
percent signs, and placeholders such as "-" or "N/A" for missing values.
Everything funnels through ``parse_number`` so all strategies agree.
"""

import math
import re
from typing import Any

_MISSING = {"", "-", "--", "n/a", "na", "null", "none"}
_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")
_NOISE_PATTERN = re.compile(r"(?i)rs\.?|npr|%|\*|,|\s")


def parse_number(value: Any) -> float:
    """Convert a raw cell or JSON value into a float.

    Missing placeholders (``None``, ``""``, ``"-"``, ``"N/A"``) become ``0``.
    Thousands separators, currency markers, percent signs and asterisks are
    stripped. Unparseable text yields ``0`` rather than raising.

    Examples:
        >>> parse_number("1,234.50")
        1234.5
        >>> parse_number("N/A")
        0.0
        >>> parse_number("Rs. 450")
        450.0
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = str(value).strip()
    if text.lower() in _MISSING:
        return 0.0

    cleaned = _NOISE_PATTERN.sub("", text)
    try:
        number = float(cleaned)
    except ValueError:
        match = _NUMBER_PATTERN.search(cleaned)
        if not match:
            return 0.0
        number = float(match.group())
    return number if math.isfinite(number) else 0.0


def parse_int(value: Any) -> int:
    """Integer variant of ``parse_number`` (truncates toward zero)."""
    return int(parse_number(value))


def clean_text(value: Any) -> str:
    """Collapse whitespace runs and trim; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def normalize_header(text: str) -> str:
    """Reduce a table header to lowercase alphanumerics.

    "Prev. Close" and "prev close" both map to "prevclose", which lets the
    column map survive cosmetic markup changes.
    """
    return re.sub(r"[^a-z0-9]", "", str(text).lower())


def split_pair(text: str | None, separator: str = "/") -> tuple[float, float]:
    """Parse "High / Low" style cells into two numbers.

    Missing halves are returned as ``0``.
    """
    if not text:
        return 0.0, 0.0
    parts = str(text).split(separator)
    first = parse_number(parts[0]) if len(parts) > 0 else 0.0
    second = parse_number(parts[1]) if len(parts) > 1 else 0.0
    return first, second


def first_value(row: dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among ``keys`` in ``row``."""
    for key in keys:
        value = row.get(key)
        if value not in (None, "", 0):
            return value
    return None
