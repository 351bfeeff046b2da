"""Error classification and exponential backoff for model calls."""

import logging
import random
from enum import Enum
from typing import Callable, Optional

import openai

from src.generation.exceptions import InvalidGenerationRequestError, TruncatedResponseError

logger = logging.getLogger(__name__)

# Matched case-insensitively against the error text
RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "rate_limit_exceeded",
    "too many requests",
    "quota exceeded",
    "resource exhausted",
)

# Provider throughput markers, matched as-is
THROUGHPUT_MARKERS = ("TPM", "RPM")

PERMANENT_SDK_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
    openai.BadRequestError,
)


class ErrorClass(str, Enum):
    """How a failed model call should be retried."""

    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


def is_rate_limit_error(error: BaseException) -> bool:
    """True if the error reports a rate or quota limit."""
    if isinstance(error, openai.RateLimitError):
        return True
    message = str(error)
    if not message:
        return False
    if any(marker in message for marker in THROUGHPUT_MARKERS):
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify a failed attempt.

    Rate limits are retried after a backoff sleep, transient errors
    (network trouble, server errors, malformed output) are retried at once,
    and permanent errors (bad credentials, invalid input, truncation) are
    raised without retrying.
    """
    if isinstance(error, (InvalidGenerationRequestError, TruncatedResponseError)):
        return ErrorClass.PERMANENT
    if is_rate_limit_error(error):
        return ErrorClass.RATE_LIMITED
    if isinstance(error, PERMANENT_SDK_ERRORS):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


def calculate_backoff_delay(
    retry_count: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter_factor: float,
    rng: Optional[Callable[[], float]] = None,
) -> int:
    """
    Exponential backoff with jitter, in milliseconds.

    The delay is ``base * 2^retry_count`` scaled by a random factor in
    ``[1 - jitter, 1 + jitter]`` and capped at ``max_delay_ms``.

    Args:
        retry_count: Zero-based retry number
        base_delay_ms: Delay for the first retry before jitter
        max_delay_ms: Upper bound of the returned delay
        jitter_factor: Width of the jitter band, between 0 and 1
        rng: Source of uniform values in [0, 1), defaults to ``random.random``

    Returns:
        Delay in milliseconds
    """
    rng = rng or random.random
    exponential = base_delay_ms * (2 ** max(0, retry_count))
    jitter = (1.0 - jitter_factor) + rng() * 2 * jitter_factor
    return int(min(exponential * jitter, max_delay_ms))
