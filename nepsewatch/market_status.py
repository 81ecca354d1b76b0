"""Market status classification from homepage text.

Pure function, no I/O. Priority is PRE_OPEN > OPEN > CLOSED, and any closed
keyword or fail-safe indicator (holiday notice, trading halt, the 3:00 PM
end-of-session stamp) wins over open patterns. Text that matches nothing is
classified CLOSED.
"""

import re

from nepsewatch.models import MarketStatus

_PRE_OPEN_PATTERN = re.compile(r"(?:Market\s+)?Status[:\s]*PRE[- ]?OPEN", re.IGNORECASE)
_OPEN_PATTERN = re.compile(r"Status[:\s]*OPEN(?!\s*-)", re.IGNORECASE)
_CLOSED_PATTERN = re.compile(r"Status[:\s]*CLOSED?", re.IGNORECASE)

_CLOSED_INDICATORS = ("holiday", "trading halt")
_END_OF_SESSION_STAMP = "3:00:00 PM"


def is_pre_open(text: str) -> bool:
    lowered = text.lower()
    return "pre open" in lowered or "pre-open" in lowered or bool(_PRE_OPEN_PATTERN.search(text))


def is_open(text: str) -> bool:
    lowered = text.lower()
    # "Market Open" only counts on pages that never mention a pre-open phase
    if "market open" in lowered and "pre" not in lowered:
        return True
    return bool(_OPEN_PATTERN.search(text))


def is_closed(text: str) -> bool:
    return "market close" in text.lower() or bool(_CLOSED_PATTERN.search(text))


def has_closed_indicator(text: str) -> bool:
    lowered = text.lower()
    return _END_OF_SESSION_STAMP in text or any(marker in lowered for marker in _CLOSED_INDICATORS)


def detect_market_status(text: str | None) -> MarketStatus:
    """Classify homepage text as PRE_OPEN, OPEN or CLOSED.

    Args:
        text: Visible text of the page (``page.inner_text("body")``).

    Returns:
        The detected MarketStatus; CLOSED when nothing is recognized.

    Examples:
        >>> detect_market_status("Market Status: Pre Open")
        <MarketStatus.PRE_OPEN: 'PRE_OPEN'>
        >>> detect_market_status("Market Closed")
        <MarketStatus.CLOSED: 'CLOSED'>
        >>> detect_market_status("")
        <MarketStatus.CLOSED: 'CLOSED'>
    """
    if not text:
        return MarketStatus.CLOSED

    pre_open = is_pre_open(text)
    closed = is_closed(text) or has_closed_indicator(text)

    if pre_open and not closed:
        return MarketStatus.PRE_OPEN
    if is_open(text) and not closed and not pre_open:
        return MarketStatus.OPEN
    return MarketStatus.CLOSED
