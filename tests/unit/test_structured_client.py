"""Unit tests for StructuredGenerationClient."""

import json
from uuid import uuid4

import pytest

from src.core.config import settings
from src.generation.exceptions import AiServiceError, InvalidGenerationRequestError, TruncatedResponseError
from src.generation.structured_client import CANCELLED_WARNING, StructuredGenerationClient
from src.models.question import Difficulty, GenerationRequest, QuestionType
from tests.fakes import make_completion


def _mcq(text: str) -> dict:
    return {
        "questionText": text,
        "type": "MCQ_SINGLE",
        "difficulty": "MEDIUM",
        "content": {
            "options": [
                {"id": "a", "text": "Chloroplast", "correct": True},
                {"id": "b", "text": "Nucleus", "correct": False},
                {"id": "c", "text": "Ribosome", "correct": False},
                {"id": "d", "text": "Vacuole", "correct": False},
            ]
        },
    }


def _valid_reply(count: int = 2) -> str:
    return json.dumps({"questions": [_mcq(f"Question {i + 1} about photosynthesis?") for i in range(count)]})


def _request(**overrides) -> GenerationRequest:
    values = {
        "chunk_content": "Photosynthesis takes place in chloroplasts.",
        "chunk_index": 3,
        "document_id": uuid4(),
        "question_type": QuestionType.MCQ_SINGLE,
        "question_count": 2,
        "difficulty": Difficulty.MEDIUM,
    }
    values.update(overrides)
    return GenerationRequest(**values)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(mock_openai_client, sleeps) -> StructuredGenerationClient:
    return StructuredGenerationClient(
        client=mock_openai_client,
        model_name="gpt-test",
        temperature=0.2,
        max_retries=3,
        sleep=sleeps.append,
        rng=lambda: 0.5,
    )


@pytest.mark.unit
class TestStructuredGenerationClient:
    """Test single-type structured generation calls."""

    def test_generate_success(self, client, mock_openai_client):
        """Test a successful call returns parsed questions and token usage."""
        mock_openai_client.chat.completions.create.return_value = make_completion(_valid_reply(), total_tokens=321)

        result = client.generate(_request())

        assert len(result.questions) == 2
        assert result.tokens_used == 321
        assert result.schema_valid is True
        assert all(q.chunk_index == 3 for q in result.questions)

        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["temperature"] == 0.2
        assert kwargs["response_format"]["type"] == "json_schema"
        assert kwargs["response_format"]["json_schema"]["name"] == "mcq_single_questions"
        assert kwargs["response_format"]["json_schema"]["schema"]["required"] == ["questions"]
        assert kwargs["messages"][0]["role"] == "system"
        assert "Generate 2 MCQ_SINGLE question(s)" in kwargs["messages"][1]["content"]

    def test_max_tokens_sized_to_question_count(self, client, mock_openai_client):
        """Test the output ceiling grows with the question count."""
        mock_openai_client.chat.completions.create.return_value = make_completion(_valid_reply())

        client.generate(_request(question_count=2))

        expected = min(
            settings.ai_max_output_tokens,
            settings.ai_output_tokens_base + 2 * settings.ai_output_tokens_per_question,
        )
        assert mock_openai_client.chat.completions.create.call_args.kwargs["max_tokens"] == expected

    def test_max_tokens_capped(self):
        """Test the output ceiling is capped."""
        assert StructuredGenerationClient.compute_max_tokens(1000) == settings.ai_max_output_tokens

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"chunk_content": "   "}, "Chunk content cannot be empty"),
            ({"question_type": None}, "Question type cannot be null"),
            ({"question_count": 0}, "Question count must be positive"),
            ({"difficulty": None}, "Difficulty cannot be null"),
        ],
    )
    def test_invalid_request_makes_no_call(self, client, mock_openai_client, overrides, message):
        """Test an invalid request is rejected before any call."""
        with pytest.raises(InvalidGenerationRequestError, match=message):
            client.generate(_request(**overrides))

        mock_openai_client.chat.completions.create.assert_not_called()

    def test_rate_limit_backs_off_then_succeeds(self, client, mock_openai_client, sleeps):
        """Test a rate limit sleeps before retrying."""
        mock_openai_client.chat.completions.create.side_effect = [
            Exception("Error code: 429 - Too Many Requests"),
            make_completion(_valid_reply()),
        ]

        result = client.generate(_request())

        assert len(result.questions) == 2
        assert mock_openai_client.chat.completions.create.call_count == 2
        # rng=0.5 removes jitter: base delay of the first retry
        assert sleeps == [settings.ai_base_delay_ms / 1000.0]

    def test_transient_errors_retry_without_sleep(self, client, mock_openai_client, sleeps):
        """Test transient errors are retried at once."""
        mock_openai_client.chat.completions.create.side_effect = [
            ConnectionError("connection reset"),
            make_completion("not json at all"),
            make_completion(_valid_reply(1)),
        ]

        result = client.generate(_request())

        assert len(result.questions) == 1
        assert mock_openai_client.chat.completions.create.call_count == 3
        assert sleeps == []

    def test_exhausted_retries(self, client, mock_openai_client):
        """Test the error raised once retries run out."""
        mock_openai_client.chat.completions.create.side_effect = ConnectionError("connection reset")

        with pytest.raises(AiServiceError, match="Failed to generate structured questions after 3 attempts"):
            client.generate(_request())

        assert mock_openai_client.chat.completions.create.call_count == 3

    def test_rejected_replies_add_to_tokens_used(self, client, mock_openai_client):
        """Test tokens of replies that failed parsing are added to the final result."""
        mock_openai_client.chat.completions.create.side_effect = [
            make_completion("not json at all", total_tokens=120),
            make_completion(_valid_reply(), total_tokens=300),
        ]

        result = client.generate(_request())

        assert len(result.questions) == 2
        assert result.tokens_used == 420

    def test_exhausted_retries_report_spent_tokens(self, client, mock_openai_client):
        """Test the final error carries the tokens of every answered attempt."""
        mock_openai_client.chat.completions.create.side_effect = [
            make_completion("", total_tokens=40),
            ConnectionError("connection reset"),
            make_completion("not json at all", total_tokens=60),
        ]

        with pytest.raises(AiServiceError) as exc_info:
            client.generate(_request())

        assert exc_info.value.tokens_used == 100

    def test_truncated_reply_not_retried(self, client, mock_openai_client):
        """Test a truncated reply is not retried."""
        mock_openai_client.chat.completions.create.return_value = make_completion(
            '{"questions": [{"questionText": "Which org', finish_reason="length"
        )

        with pytest.raises(TruncatedResponseError):
            client.generate(_request())

        assert mock_openai_client.chat.completions.create.call_count == 1

    def test_length_finish_reason_turns_parse_error_into_truncation(self, client, mock_openai_client):
        """Test a parse error at the length limit becomes a truncation error."""
        mock_openai_client.chat.completions.create.return_value = make_completion(
            '{"questions": {}}', finish_reason="length"
        )

        with pytest.raises(TruncatedResponseError, match="Parser error: 'questions' field must be an array"):
            client.generate(_request())

        assert mock_openai_client.chat.completions.create.call_count == 1

    def test_empty_reply_is_retried(self, client, mock_openai_client):
        """Test an empty reply is retried."""
        mock_openai_client.chat.completions.create.side_effect = [
            make_completion(""),
            make_completion(_valid_reply(1)),
        ]

        result = client.generate(_request())

        assert len(result.questions) == 1

    def test_cancelled_before_first_attempt(self, client, mock_openai_client):
        """Test a cancelled job makes no model call."""
        result = client.generate(_request(cancellation_check=lambda: True))

        assert result.questions == []
        assert result.warnings == [CANCELLED_WARNING]
        assert result.tokens_used == 0
        mock_openai_client.chat.completions.create.assert_not_called()

    def test_cancelled_between_attempts(self, client, mock_openai_client):
        """Test cancellation is checked before each retry."""
        checks = iter([False, True])
        mock_openai_client.chat.completions.create.side_effect = ConnectionError("connection reset")

        result = client.generate(_request(cancellation_check=lambda: next(checks)))

        assert result.warnings == [CANCELLED_WARNING]
        assert mock_openai_client.chat.completions.create.call_count == 1

    def test_missing_api_key(self, mocker):
        """Test a missing API key is reported."""
        mocker.patch.object(settings, "openai_api_key", "")

        with pytest.raises(AiServiceError, match="OPENAI_API_KEY is not configured"):
            StructuredGenerationClient().generate(_request())

    def test_regenerate_missing_types_collects_failures_as_warnings(self, client, mock_openai_client):
        """Test a failing type becomes a warning during regeneration."""
        true_false = {
            "questionText": "Chloroplasts perform photosynthesis.",
            "type": "TRUE_FALSE",
            "difficulty": "MEDIUM",
            "content": {"answer": True},
        }
        mock_openai_client.chat.completions.create.side_effect = [
            make_completion('{"questions": [{"questionText": "cut', finish_reason="length"),
            make_completion(json.dumps({"questions": [true_false]}), total_tokens=90),
        ]

        result = client.regenerate_missing_types(
            _request(question_type=None, question_count=1),
            [QuestionType.MCQ_SINGLE, QuestionType.TRUE_FALSE],
        )

        assert [q.type for q in result.questions] == [QuestionType.TRUE_FALSE]
        # The truncated MCQ_SINGLE reply was billed too
        assert result.tokens_used == 250 + 90
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("Failed to regenerate MCQ_SINGLE:")
