"""Rate limit detection and reset-time parsing for upstream responses.

Callers feed the status code and headers of a failed outbound call through
these helpers before reporting the result to ``AccountManager``.
"""

import re
from datetime import UTC

from dateutil import parser as dateutil_parser
from structlog import get_logger

from codex_rotation.rotation.accounts import now_ms
from codex_rotation.rotation.constants import (
    ONE_HOUR_MILLISECONDS,
    ONE_MINUTE_MILLISECONDS,
    ONE_SECOND_MILLISECONDS,
)


logger = get_logger(__name__)

# Rate limit detection patterns
RATE_LIMIT_PATTERNS = [
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"usage.?limit", re.IGNORECASE),
    re.compile(r"quota", re.IGNORECASE),
    re.compile(r"too.?many.?requests", re.IGNORECASE),
]

# "6m0s", "1.5s", "20ms", "1h2m3s"
DURATION_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")

DURATION_UNITS_MS = {
    "ms": 1,
    "s": ONE_SECOND_MILLISECONDS,
    "m": ONE_MINUTE_MILLISECONDS,
    "h": ONE_HOUR_MILLISECONDS,
}

DURATION_RESET_HEADERS = (
    "x-ratelimit-reset-requests",
    "x-ratelimit-reset-tokens",
)


def is_rate_limit_error(status_code: int, error_message: str | None = None) -> bool:
    """Check if an error indicates rate limiting.

    Args:
        status_code: HTTP status code
        error_message: Optional error message to check

    Returns:
        True if this appears to be a rate limit error
    """
    # HTTP 429 is always rate limit
    if status_code == 429:
        return True

    if error_message:
        return any(pattern.search(error_message) for pattern in RATE_LIMIT_PATTERNS)

    return False


def parse_duration_ms(value: str) -> int | None:
    """Parse a compact duration such as ``6m0s`` into milliseconds.

    Returns:
        Duration in milliseconds, or None if the string is not a duration
    """
    text = value.strip().lower()
    if not text:
        return None

    total = 0.0
    position = 0
    for match in DURATION_PART_PATTERN.finditer(text):
        if match.start() != position:
            return None
        total += float(match.group(1)) * DURATION_UNITS_MS[match.group(2)]
        position = match.end()

    if position != len(text):
        return None
    return int(total)


def parse_retry_after(headers: dict[str, str], now: int | None = None) -> int | None:
    """Parse rate limit reset time from response headers.

    Checks headers in order of preference:
    1. retry-after-ms (milliseconds)
    2. retry-after (seconds or HTTP date)
    3. x-ratelimit-reset-requests / x-ratelimit-reset-tokens (durations,
       the later of the two)

    Args:
        headers: Response headers (case-insensitive lookup)
        now: Current time in ms, defaults to the wall clock

    Returns:
        Unix timestamp (ms) when rate limit resets, or None
    """
    if now is None:
        now = now_ms()

    headers_lower = {k.lower(): v for k, v in headers.items()}

    retry_after_ms = headers_lower.get("retry-after-ms")
    if retry_after_ms is not None:
        try:
            return now + int(float(retry_after_ms))
        except ValueError:
            logger.debug("retry_after_ms_unparsable", value=retry_after_ms)

    retry_after = headers_lower.get("retry-after")
    if retry_after is not None:
        try:
            seconds = int(retry_after)
            return now + seconds * ONE_SECOND_MILLISECONDS
        except ValueError:
            pass

        try:
            dt = dateutil_parser.parse(retry_after)
            # Ensure timezone-aware datetime (assume UTC if naive)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=UTC)
            return int(dt.timestamp() * 1000)
        except (ValueError, OverflowError, dateutil_parser.ParserError):
            logger.debug("retry_after_unparsable", value=retry_after)

    durations = [
        duration
        for header_name in DURATION_RESET_HEADERS
        if (raw := headers_lower.get(header_name)) is not None
        and (duration := parse_duration_ms(raw)) is not None
    ]
    if durations:
        return now + max(durations)

    logger.debug(
        "no_retry_after_header_found", available_headers=sorted(headers_lower)
    )
    return None
