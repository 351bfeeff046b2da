"""Unit tests for error classification and backoff delays."""

import httpx
import openai
import pytest

from src.generation.backoff import ErrorClass, calculate_backoff_delay, classify_error, is_rate_limit_error
from src.generation.exceptions import (
    AiServiceError,
    InvalidGenerationRequestError,
    ResponseParseError,
    TruncatedResponseError,
)


def _response(status_code: int) -> httpx.Response:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return httpx.Response(status_code, request=request)


@pytest.mark.unit
class TestIsRateLimitError:
    """Test rate-limit detection."""

    @pytest.mark.parametrize(
        "message",
        [
            "Error code: 429",
            "Rate limit reached for requests",
            "rate_limit_exceeded",
            "Too Many Requests",
            "Quota exceeded for this project",
            "RESOURCE EXHAUSTED",
            "Limit 30000 TPM reached",
            "Limit 500 RPM reached",
        ],
    )
    def test_markers(self, message: str):
        """Test every rate-limit marker in an error message is recognised."""
        assert is_rate_limit_error(Exception(message))

    def test_throughput_markers_are_case_sensitive(self):
        """Test TPM and RPM only match in upper case."""
        assert not is_rate_limit_error(Exception("see rpm package docs"))

    def test_plain_errors(self):
        """Test ordinary errors are not mistaken for rate limits."""
        assert not is_rate_limit_error(Exception("Connection reset by peer"))
        assert not is_rate_limit_error(Exception())

    def test_sdk_rate_limit_error(self):
        """Test the SDK rate-limit exception is classified as rate limited."""
        error = openai.RateLimitError("slow down", response=_response(429), body=None)

        assert is_rate_limit_error(error)


@pytest.mark.unit
class TestClassifyError:
    """Test retry classes of failed attempts."""

    def test_rate_limit(self):
        """Test rate-limit text in a generic error is classified as rate limited."""
        assert classify_error(AiServiceError("HTTP 429 Too Many Requests")) == ErrorClass.RATE_LIMITED

    def test_network_and_parse_errors_are_transient(self):
        """Test network and parse failures are retried."""
        assert classify_error(ConnectionError("connection reset")) == ErrorClass.TRANSIENT
        assert classify_error(ResponseParseError("No valid questions parsed from response")) == ErrorClass.TRANSIENT

    def test_truncation_and_invalid_requests_are_permanent(self):
        """Test truncation and invalid requests are never retried."""
        assert classify_error(TruncatedResponseError(1800)) == ErrorClass.PERMANENT
        assert classify_error(InvalidGenerationRequestError("Question count must be positive")) == ErrorClass.PERMANENT

    def test_sdk_client_errors_are_permanent(self):
        """Test authentication, permission, not-found and bad-request errors are permanent."""
        auth = openai.AuthenticationError("bad key", response=_response(401), body=None)
        bad_request = openai.BadRequestError("bad schema", response=_response(400), body=None)

        assert classify_error(auth) == ErrorClass.PERMANENT
        assert classify_error(bad_request) == ErrorClass.PERMANENT

    def test_sdk_server_error_is_transient(self):
        """Test a provider server error is retried."""
        error = openai.InternalServerError("upstream failure", response=_response(500), body=None)

        assert classify_error(error) == ErrorClass.TRANSIENT


@pytest.mark.unit
class TestCalculateBackoffDelay:
    """Test exponential backoff with jitter."""

    def test_no_jitter_at_midpoint(self):
        """Test a midpoint random value yields the plain exponential delay."""
        assert calculate_backoff_delay(0, 1000, 60000, 0.25, rng=lambda: 0.5) == 1000
        assert calculate_backoff_delay(1, 1000, 60000, 0.25, rng=lambda: 0.5) == 2000
        assert calculate_backoff_delay(3, 1000, 60000, 0.25, rng=lambda: 0.5) == 8000

    def test_jitter_bounds(self):
        """Test jitter stays within the configured fraction."""
        low = calculate_backoff_delay(2, 1000, 60000, 0.25, rng=lambda: 0.0)
        high = calculate_backoff_delay(2, 1000, 60000, 0.25, rng=lambda: 0.999999)

        assert low == 3000
        assert 4999 <= high <= 5000

    def test_capped_at_max_delay(self):
        """Test the delay never exceeds the maximum."""
        assert calculate_backoff_delay(10, 1000, 60000, 0.25, rng=lambda: 0.999) == 60000

    @pytest.mark.parametrize("retry_count", range(6))
    def test_random_delay_within_band(self, retry_count: int):
        """Test the default random source stays within the jitter band."""
        delay = calculate_backoff_delay(retry_count, 1000, 60000, 0.25)
        exponential = 1000 * 2 ** retry_count

        assert min(int(exponential * 0.75), 60000) <= delay <= min(exponential * 1.25, 60000)
