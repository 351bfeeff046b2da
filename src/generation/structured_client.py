"""Schema-constrained question generation with OpenAI structured outputs."""

import logging
import time
from typing import Callable, Iterable, List, Optional

from openai import OpenAI

from src.core.config import settings
from src.generation.backoff import ErrorClass, calculate_backoff_delay, classify_error
from src.generation.exceptions import (
    AiServiceError,
    InvalidGenerationRequestError,
    ResponseParseError,
    TruncatedResponseError,
)
from src.generation.prompts import build_system_prompt, build_user_prompt
from src.generation.response_parser import parse_structured_response
from src.generation.schema_registry import QuestionSchemaRegistry
from src.models.question import GeneratedQuestion, GenerationRequest, GenerationResult, QuestionType

logger = logging.getLogger(__name__)

CANCELLED_WARNING = "Generation cancelled by user"


class StructuredGenerationClient:
    """Generates typed questions for one chunk and question type.

    Each call is constrained to the JSON schema of the requested type,
    retried on transient failures (with backoff on rate limits) and parsed
    into ``GeneratedQuestion`` records. The cancellation predicate of the
    request is checked before every attempt.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model_name: str = None,
        temperature: float = None,
        max_retries: int = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the client.

        Args:
            client: OpenAI client (created lazily from settings when omitted)
            model_name: Chat model name (defaults to config)
            temperature: Sampling temperature (defaults to config)
            max_retries: Attempts per call (defaults to config)
            sleep: Sleep function used for rate-limit backoff, in seconds
            rng: Random source for backoff jitter
        """
        self._client = client
        self.model_name = model_name or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_retries = max_retries or settings.ai_max_retries
        self._sleep = sleep
        self._rng = rng
        self.schema_registry = QuestionSchemaRegistry()

    def _get_client(self) -> OpenAI:
        """Lazy load the OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise AiServiceError("OPENAI_API_KEY is not configured")
            logger.info(f"Initializing OpenAI client with model: {self.model_name}")
            self._client = OpenAI(api_key=settings.openai_api_key)
        return self._client

    @staticmethod
    def compute_max_tokens(question_count: int) -> int:
        """Output token ceiling sized to the number of requested questions."""
        requested = settings.ai_output_tokens_base + question_count * settings.ai_output_tokens_per_question
        return min(settings.ai_max_output_tokens, requested)

    @staticmethod
    def validate_request(request: GenerationRequest) -> None:
        """
        Reject malformed requests before any model call.

        Raises:
            InvalidGenerationRequestError: If the request cannot be served
        """
        if not request.chunk_content or not request.chunk_content.strip():
            raise InvalidGenerationRequestError("Chunk content cannot be empty")
        if request.question_type is None:
            raise InvalidGenerationRequestError("Question type cannot be null")
        if request.question_count <= 0:
            raise InvalidGenerationRequestError("Question count must be positive")
        if request.difficulty is None:
            raise InvalidGenerationRequestError("Difficulty cannot be null")

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Generate questions for one chunk and type.

        Args:
            request: Per-task generation request

        Returns:
            GenerationResult; empty with a warning if the job was cancelled

        Raises:
            InvalidGenerationRequestError: If the request is malformed
            TruncatedResponseError: If the reply hit the output token ceiling
            AiServiceError: If retries are exhausted or the service refused the call
        """
        self.validate_request(request)
        client = self._get_client()

        last_error: Optional[Exception] = None
        # Tokens of answered attempts that were rejected, still billed by the provider
        spent_tokens = 0

        for attempt in range(self.max_retries):
            if request.is_cancelled():
                logger.info(
                    f"Generation cancelled before attempt {attempt + 1} "
                    f"(chunk={request.chunk_index}, type={request.question_type.value})"
                )
                return GenerationResult(warnings=[CANCELLED_WARNING], tokens_used=spent_tokens)

            try:
                result = self._attempt_generation(client, request)
                result.tokens_used += spent_tokens
                return result
            except Exception as e:
                last_error = e
                spent_tokens += getattr(e, "tokens_used", 0)
                error_class = classify_error(e)

                if error_class == ErrorClass.PERMANENT:
                    logger.error(f"Structured generation failed permanently: {e}")
                    if isinstance(e, (ResponseParseError, AiServiceError)):
                        e.tokens_used = spent_tokens
                        raise
                    if isinstance(e, InvalidGenerationRequestError):
                        raise
                    error = AiServiceError(f"Structured generation failed: {e}")
                    error.tokens_used = spent_tokens
                    raise error from e

                if attempt == self.max_retries - 1:
                    break

                if error_class == ErrorClass.RATE_LIMITED:
                    delay_ms = calculate_backoff_delay(
                        attempt,
                        settings.ai_base_delay_ms,
                        settings.ai_max_delay_ms,
                        settings.ai_jitter_factor,
                        self._rng,
                    )
                    logger.warning(
                        f"Rate limit hit for structured generation (attempt {attempt + 1}). Waiting {delay_ms} ms"
                    )
                    self._sleep(delay_ms / 1000.0)
                else:
                    logger.warning(f"Structured generation attempt {attempt + 1} failed: {e}")

        logger.error(f"Structured generation failed after {self.max_retries} attempts: {last_error}")
        error = AiServiceError(f"Failed to generate structured questions after {self.max_retries} attempts: {last_error}")
        error.tokens_used = spent_tokens
        raise error from last_error

    def _attempt_generation(self, client: OpenAI, request: GenerationRequest) -> GenerationResult:
        """Single model call and parse."""
        question_type = request.question_type
        schema = self.schema_registry.get_schema_for_question_type(question_type)
        max_tokens = self.compute_max_tokens(request.question_count)

        logger.debug(
            f"Sending structured generation request for {request.question_count} "
            f"{question_type.value} questions (max_tokens={max_tokens})"
        )

        completion = client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": build_system_prompt()},
                {
                    "role": "user",
                    "content": build_user_prompt(
                        request.chunk_content,
                        question_type,
                        request.question_count,
                        request.difficulty,
                        request.language,
                    ),
                },
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": f"{question_type.value.lower()}_questions", "schema": schema},
            },
            max_tokens=max_tokens,
            temperature=self.temperature,
        )

        usage = getattr(completion, "usage", None)
        tokens_used = (getattr(usage, "total_tokens", None) or 0) if usage is not None else 0

        try:
            result = self._parse_completion(completion, question_type, max_tokens)
        except (AiServiceError, ResponseParseError) as e:
            e.tokens_used = tokens_used
            raise

        if tokens_used:
            result.tokens_used = tokens_used

        for question in result.questions:
            question.chunk_index = request.chunk_index

        logger.info(
            f"Generated {len(result.questions)} structured questions of type {question_type.value} "
            f"(chunk={request.chunk_index}, tokens={result.tokens_used})"
        )
        return result

    @staticmethod
    def _parse_completion(completion, question_type: QuestionType, max_tokens: int) -> GenerationResult:
        if not completion.choices:
            raise AiServiceError("No response received from AI service")

        choice = completion.choices[0]
        raw_response = choice.message.content
        if not raw_response or not raw_response.strip():
            raise AiServiceError("Empty response received from AI service")

        try:
            return parse_structured_response(raw_response, question_type, max_tokens)
        except TruncatedResponseError:
            raise
        except ResponseParseError as e:
            if getattr(choice, "finish_reason", None) == "length":
                raise TruncatedResponseError(max_tokens, str(e)) from e
            raise

    def regenerate_missing_types(
        self,
        request: GenerationRequest,
        missing_types: Iterable[QuestionType],
    ) -> GenerationResult:
        """
        Generate only the given types for the request's chunk.

        A failing type is recorded as a warning and the remaining types are
        still attempted.
        """
        missing_types = list(missing_types)
        logger.info(f"Regenerating missing question types: {[t.value for t in missing_types]}")

        questions: List[GeneratedQuestion] = []
        warnings: List[str] = []
        total_tokens = 0

        for missing_type in missing_types:
            type_request = request.model_copy(update={"question_type": missing_type})
            try:
                response = self.generate(type_request)
            except (AiServiceError, ResponseParseError, InvalidGenerationRequestError) as e:
                logger.warning(f"Failed to regenerate type {missing_type.value}: {e}")
                warnings.append(f"Failed to regenerate {missing_type.value}: {e}")
                total_tokens += getattr(e, "tokens_used", 0)
                continue

            questions.extend(response.questions)
            warnings.extend(response.warnings)
            total_tokens += response.tokens_used

        return GenerationResult(questions=questions, warnings=warnings, tokens_used=total_tokens, schema_valid=True)
