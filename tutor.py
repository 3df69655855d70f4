import logging
import os
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from prompts.masterprompts import MasterPrompt, get_prompt, load_prompts
from schemas import Message, Question

logger = logging.getLogger(__name__)

# --------- Master prompt management ---------
_PROMPT_VARIANTS = load_prompts()
_DEFAULT_VARIANT = os.getenv("PROMPT_VARIANT", "socratic")
try:
    ACTIVE_MASTER_PROMPT: MasterPrompt = get_prompt(_DEFAULT_VARIANT)
except KeyError:
    logger.warning("Unknown PROMPT_VARIANT '%s'; falling back to the first available variant", _DEFAULT_VARIANT)
    ACTIVE_MASTER_PROMPT = get_prompt(next(iter(_PROMPT_VARIANTS)))

PROMPT_VARIANT = ACTIVE_MASTER_PROMPT.normalized_variant
PROMPT_VERSION = ACTIVE_MASTER_PROMPT.prompt_version

HistoryEntry = Union[Message, Mapping[str, Any]]


def _copy_history(history: Optional[Iterable[HistoryEntry]]) -> list[Message]:
    """Return fresh Message values for ``history`` in the same order."""
    copied: list[Message] = []
    for entry in history or ():
        if isinstance(entry, Message):
            copied.append(entry.model_copy())
        else:
            copied.append(Message.model_validate(dict(entry)))
    return copied


def _format_options(question: Question) -> str:
    if not question.options:
        return ""
    lines = [f"{label}. {text}" for label, text in question.options.items()]
    return "\nOptions:\n" + "\n".join(lines)


class PromptComposer:
    """Builds the ordered message sequences sent to the generative backend.

    Every sequence opens with the pedagogy policy; question context and task
    instructions are placed before any prior conversation turn, except the hint
    request, which is the final user turn. Inputs are never mutated.
    """

    def __init__(self, master_prompt: Optional[MasterPrompt] = None) -> None:
        self.master_prompt = master_prompt or ACTIVE_MASTER_PROMPT

    @property
    def policy_message(self) -> Message:
        return Message(role="system", content=self.master_prompt.policy)

    def question_context(self, question: Question, user_answer: Optional[str] = None) -> str:
        answer = (user_answer or "").strip()
        answer_block = f"\nStudent's Current Answer: {answer}" if answer else ""
        return self.master_prompt.render_context(
            subject=question.subject_label,
            difficulty=question.difficulty,
            content=question.content,
            options_block=_format_options(question),
            answer_block=answer_block,
            correct_answer=question.correct_answer,
            explanation=question.explanation or "not provided",
        )

    def compose_tutor_context(
        self,
        history: Optional[Sequence[HistoryEntry]],
        question: Question,
        user_answer: Optional[str] = None,
    ) -> list[Message]:
        return [
            self.policy_message,
            Message(role="system", content=self.question_context(question, user_answer)),
            *_copy_history(history),
        ]

    def compose_evaluation_prompt(self, question: Question, user_answer: str) -> str:
        return self.master_prompt.render_evaluation(
            content=question.content,
            options_block=_format_options(question),
            correct_answer=question.correct_answer,
            user_answer=user_answer,
            explanation=question.explanation or "not provided",
        )

    def compose_evaluation_messages(self, question: Question, user_answer: str) -> list[Message]:
        return [
            Message(role="system", content=self.master_prompt.examiner_system),
            Message(role="user", content=self.compose_evaluation_prompt(question, user_answer)),
        ]

    def compose_hint_prompt(
        self,
        question: Question,
        history: Optional[Sequence[HistoryEntry]],
    ) -> list[Message]:
        instruction = self.master_prompt.render_hint(
            content=question.content,
            correct_answer=question.correct_answer,
        )
        return [
            self.policy_message,
            *_copy_history(history),
            Message(role="user", content=instruction),
        ]
