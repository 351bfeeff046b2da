"""Errors raised by structured question generation."""


class AiServiceError(Exception):
    """Generation failed after retries, or the model service refused the call."""

    # Tokens billed by the model for the calls that led to this error
    tokens_used = 0


class ResponseParseError(Exception):
    """The model output could not be turned into valid questions."""

    tokens_used = 0


class TruncatedResponseError(ResponseParseError):
    """The model output was cut off at the output token ceiling."""

    def __init__(self, max_tokens: int, detail: str = ""):
        message = (
            f"JSON response truncated due to token limit. Current max-tokens: {max_tokens}. "
            f"Try reducing question count or increasing max-tokens (AI_MAX_OUTPUT_TOKENS) in configuration."
        )
        if detail:
            message = f"{message} Parser error: {detail}"
        super().__init__(message)
        self.max_tokens = max_tokens


class InvalidGenerationRequestError(ValueError):
    """The generation request is malformed and must not be retried."""
