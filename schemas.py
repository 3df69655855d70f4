"""Pydantic schemas for questions, evaluations and progress plus the evaluation parser."""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "SUBJECTS",
    "Difficulty",
    "QuestionType",
    "Role",
    "Message",
    "Question",
    "Evaluation",
    "ProgressRecord",
    "StatsRecord",
    "DEFAULT_FEEDBACK",
    "default_evaluation",
    "parse_evaluation",
]

logger = logging.getLogger(__name__)

SUBJECTS: Dict[str, str] = {
    "mathematics": "Mathematics",
    "physics": "Physics",
    "chemistry": "Chemistry",
    "biology": "Biology",
    "english": "English",
    "history": "History",
    "geography": "Geography",
    "economics": "Economics",
    "business_management": "Business Management",
    "psychology": "Psychology",
    "computer_science": "Computer Science",
}

Difficulty = Literal["easy", "medium", "hard"]
QuestionType = Literal["multiple_choice", "short_answer", "essay", "calculation"]
Role = Literal["system", "user", "assistant"]

DEFAULT_FEEDBACK = "Unable to evaluate at this time."


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Message(_CamelModel):
    role: Role
    content: str


class Question(_CamelModel):
    """Immutable catalog question.

    ``options`` is only meaningful for multiple-choice questions: it holds the
    ordered label -> choice text mapping there and is ``None`` everywhere else.
    """

    id: Optional[int] = None
    subject: str
    difficulty: Difficulty = "medium"
    question_type: QuestionType = Field(
        default="short_answer",
        validation_alias=AliasChoices("type", "questionType", "question_type"),
        serialization_alias="type",
    )
    title: Optional[str] = None
    content: str
    correct_answer: str
    explanation: str = ""
    options: Optional[Dict[str, str]] = None
    tags: List[str] = Field(default_factory=list)
    learning_objectives: List[str] = Field(default_factory=list)

    @field_validator("subject", mode="before")
    @classmethod
    def _normalize_subject(cls, value: Any) -> str:
        key = str(value or "").strip().lower().replace(" ", "_")
        if key not in SUBJECTS:
            raise ValueError(f"Unknown subject '{value}'. Expected one of: {', '.join(SUBJECTS)}")
        return key

    @model_validator(mode="after")
    def _check_options_variant(self) -> "Question":
        if self.question_type == "multiple_choice":
            if not self.options:
                raise ValueError("multiple_choice questions require a non-empty options mapping")
        elif self.options is not None:
            raise ValueError(f"options are only allowed for multiple_choice questions, not {self.question_type}")
        return self

    @property
    def subject_label(self) -> str:
        return SUBJECTS.get(self.subject, self.subject.title())


class Evaluation(_CamelModel):
    is_correct: bool = False
    score: int = Field(default=0, ge=0, le=100)
    feedback: str = DEFAULT_FEEDBACK
    suggestions: List[str] = Field(default_factory=list)


class ProgressRecord(_CamelModel):
    user_id: str
    question_id: int
    attempts: int = Field(default=0, ge=0)
    correct_attempts: int = Field(default=0, ge=0)
    last_attempted_at: Optional[datetime] = None
    is_completed: bool = False
    user_answer: Optional[str] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _check_counts(self) -> "ProgressRecord":
        if self.correct_attempts > self.attempts:
            raise ValueError("correct_attempts cannot exceed attempts")
        return self


class StatsRecord(_CamelModel):
    user_id: str
    total_questions_attempted: int = Field(default=0, ge=0)
    total_questions_correct: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_activity_date: Optional[date] = None
    total_study_time_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_counts(self) -> "StatsRecord":
        if self.total_questions_correct > self.total_questions_attempted:
            raise ValueError("total_questions_correct cannot exceed total_questions_attempted")
        if self.longest_streak < self.current_streak:
            raise ValueError("longest_streak cannot be lower than current_streak")
        return self

    @property
    def accuracy_percent(self) -> int:
        if not self.total_questions_attempted:
            return 0
        return round(self.total_questions_correct / self.total_questions_attempted * 100)


def default_evaluation() -> Evaluation:
    return Evaluation()


# ---------- Evaluation parsing ----------
# Replies longer than this skip the embedded-object scan and yield the default.
MAX_EVALUATION_CHARS = 32_000


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    """Return the first balanced ``{...}`` span of ``text`` that decodes as JSON.

    Single left-to-right pass: a candidate that fails to decode is skipped as
    a whole and scanning resumes after its closing brace.
    """
    start = -1
    depth = 0
    in_string = False
    escaped = False
    for idx, char in enumerate(text):
        if depth == 0:
            if char == "{":
                start, depth, in_string, escaped = idx, 1, False, False
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                candidate = text[start : idx + 1]
                try:
                    json.loads(candidate)
                except (ValueError, RecursionError):
                    continue
                return candidate, start, idx + 1
    raise ValueError("No JSON object found in provided text")


def _decode_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        if len(text) > MAX_EVALUATION_CHARS:
            logger.warning("Evaluation output of %d chars is not plain JSON; skipping object scan", len(text))
            return None
        try:
            snippet, _, _ = _find_first_json_object(text)
        except ValueError:
            return None
        payload = json.loads(snippet)
    return payload if isinstance(payload, dict) else None


def _coerce_is_correct(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return False


def _coerce_score(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        value = int(round(value))
    if 0 <= value <= 100:
        return int(value)
    return 0


def _coerce_feedback(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return DEFAULT_FEEDBACK


def _coerce_suggestions(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, str) and entry.strip()]


def parse_evaluation(raw_text: Optional[str]) -> Evaluation:
    """Decode backend output into an :class:`Evaluation`.

    Never raises. Each of ``isCorrect``, ``score``, ``feedback`` and
    ``suggestions`` is decoded on its own; a missing, mistyped or out-of-range
    value is replaced by its default (``False``, ``0``,
    ``"Unable to evaluate at this time."``, ``[]``) without affecting the
    other fields. Text that holds no JSON object yields the full default.
    """

    try:
        payload = _decode_object(raw_text or "")
    except (TypeError, ValueError, RecursionError):
        payload = None
    if payload is None:
        logger.warning("Evaluation output was not a JSON object; using default evaluation")
        return default_evaluation()

    return Evaluation(
        is_correct=_coerce_is_correct(payload.get("isCorrect")),
        score=_coerce_score(payload.get("score")),
        feedback=_coerce_feedback(payload.get("feedback")),
        suggestions=_coerce_suggestions(payload.get("suggestions")),
    )
