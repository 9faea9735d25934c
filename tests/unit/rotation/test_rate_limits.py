"""Tests for rate limit detection and reset-time parsing."""

from datetime import UTC, datetime

import pytest

from codex_rotation.rotation.rate_limits import (
    is_rate_limit_error,
    parse_duration_ms,
    parse_retry_after,
)


NOW = 1_700_000_000_000


@pytest.mark.unit
class TestIsRateLimitError:
    """Tests for rate limit detection."""

    def test_429_is_always_rate_limit(self) -> None:
        assert is_rate_limit_error(429)

    @pytest.mark.parametrize(
        "message",
        [
            "Rate limit reached for requests",
            "You have hit your usage limit",
            "insufficient_quota",
            "Too Many Requests",
        ],
    )
    def test_message_patterns(self, message: str) -> None:
        assert is_rate_limit_error(400, message)

    def test_other_errors(self) -> None:
        assert not is_rate_limit_error(500)
        assert not is_rate_limit_error(401, "invalid_grant")


@pytest.mark.unit
class TestParseDuration:
    """Tests for compact reset durations."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1s", 1_000),
            ("1.5s", 1_500),
            ("20ms", 20),
            ("6m0s", 360_000),
            ("1h2m3s", 3_723_000),
        ],
    )
    def test_valid_durations(self, value: str, expected: int) -> None:
        assert parse_duration_ms(value) == expected

    @pytest.mark.parametrize("value", ["", "soon", "5", "1s later", "m5"])
    def test_invalid_durations(self, value: str) -> None:
        assert parse_duration_ms(value) is None


@pytest.mark.unit
class TestParseRetryAfter:
    """Tests for reset time extraction from response headers."""

    def test_retry_after_seconds(self) -> None:
        assert parse_retry_after({"Retry-After": "30"}, NOW) == NOW + 30_000

    def test_retry_after_ms_takes_precedence(self) -> None:
        headers = {"retry-after-ms": "1500", "retry-after": "30"}

        assert parse_retry_after(headers, NOW) == NOW + 1_500

    def test_retry_after_http_date(self) -> None:
        reset = parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}, NOW)

        expected = datetime(2015, 10, 21, 7, 28, tzinfo=UTC)
        assert reset == int(expected.timestamp() * 1000)

    def test_openai_reset_headers_use_later_window(self) -> None:
        headers = {
            "x-ratelimit-reset-requests": "2s",
            "x-ratelimit-reset-tokens": "6m0s",
        }

        assert parse_retry_after(headers, NOW) == NOW + 360_000

    def test_unparsable_headers(self) -> None:
        headers = {"retry-after": "whenever", "x-ratelimit-reset-tokens": "later"}

        assert parse_retry_after(headers, NOW) is None

    def test_no_headers(self) -> None:
        assert parse_retry_after({}, NOW) is None
