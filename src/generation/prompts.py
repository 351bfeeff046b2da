"""Prompt construction for structured question generation."""

from src.models.question import Difficulty, QuestionType

SYSTEM_PROMPT = """You are an expert question generator for educational content.

Your reply is validated against a JSON schema supplied with the request.

IMPORTANT RULES:
1. Return ONLY valid JSON - no markdown, no explanation, no preamble
2. The top-level object has a single "questions" array
3. Every question has questionText, type, difficulty and a type-specific content object
4. Respect all type constraints and validation rules of the schema
5. Base every question strictly on the provided content"""

TYPE_GUIDANCE = {
    QuestionType.MCQ_SINGLE: "Provide exactly 4 options with exactly one marked correct.",
    QuestionType.MCQ_MULTI: "Provide 4 to 6 options with at least two marked correct.",
    QuestionType.TRUE_FALSE: "State a claim and give the boolean answer.",
    QuestionType.OPEN: "Ask an open question and give a concise model answer.",
    QuestionType.FILL_GAP: (
        "Write a sentence with gaps marked {1}, {2}, ... and list every gap with the same "
        "sequential id starting from 1."
    ),
    QuestionType.ORDERING: "List 2 to 10 items in their correct order with sequential ids.",
    QuestionType.MATCHING: "Provide at least 4 left items, each with a matchId pointing to one of at least 4 right items.",
    QuestionType.HOTSPOT: "Describe an image reference and 2 to 6 rectangular regions, marking the correct ones.",
    QuestionType.COMPLIANCE: "Provide 2 to 6 statements, each marked compliant or not.",
}

DIFFICULTY_GUIDANCE = {
    Difficulty.EASY: "Test recall of facts stated directly in the text.",
    Difficulty.MEDIUM: "Test understanding and application of the main ideas.",
    Difficulty.HARD: "Test analysis and synthesis across several ideas in the text.",
}


def build_system_prompt() -> str:
    """Structured-output contract, without the schema body."""
    return SYSTEM_PROMPT


def build_user_prompt(
    chunk_content: str,
    question_type: QuestionType,
    question_count: int,
    difficulty: Difficulty,
    language: str = "en",
) -> str:
    """
    Build the per-chunk generation prompt.

    Args:
        chunk_content: Source text the questions are drawn from
        question_type: Requested question type
        question_count: Number of questions to generate
        difficulty: Requested difficulty
        language: ISO language code of the generated questions

    Returns:
        Prompt text
    """
    return f"""Content:
{chunk_content}

Generate {question_count} {question_type.value} question(s) at {difficulty.value} difficulty.
{TYPE_GUIDANCE[question_type]}
{DIFFICULTY_GUIDANCE[difficulty]}
Write questions, hints and explanations in language: {language}.
Set "type" to {question_type.value} and "difficulty" to {difficulty.value} on every question."""
