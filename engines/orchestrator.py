"""Sequences composer, backend, parser and aggregator for each tutoring call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from engines.outbox import AttemptOutbox, PendingAttempt
from engines.progress import PersistenceFailure, ProgressAggregator
from llm_client import CompletionOptions, GenerativeBackendFailure, LLMClient
from schemas import Evaluation, ProgressRecord, Question, StatsRecord, default_evaluation, parse_evaluation
from tutor import HistoryEntry, PromptComposer

_LOGGER = logging.getLogger(__name__)

CHAT_FALLBACK_REPLY = "I apologize, but I encountered an error. Please try again."
HINT_FALLBACK_REPLY = "Think about the key concepts involved in this problem."

CHAT_OPTIONS = CompletionOptions(temperature=0.7, max_tokens=500)
HINT_OPTIONS = CompletionOptions(temperature=0.7, max_tokens=200)
EVALUATION_OPTIONS = CompletionOptions(temperature=0.3, response_format="structured_json")


@dataclass(frozen=True)
class AttemptOutcome:
    """Everything ``evaluate`` produced for one attempt."""

    evaluation: Evaluation
    progress: Optional[ProgressRecord] = None
    stats: Optional[StatsRecord] = None
    persisted: bool = False
    backend_available: bool = True


class TutoringOrchestrator:
    """Stateless per-call pipeline; conversation history comes from the caller."""

    def __init__(
        self,
        llm_client: LLMClient,
        aggregator: Optional[ProgressAggregator] = None,
        *,
        composer: Optional[PromptComposer] = None,
        outbox: Optional[AttemptOutbox] = None,
    ) -> None:
        self.llm_client = llm_client
        self.aggregator = aggregator or ProgressAggregator()
        self.composer = composer or PromptComposer()
        self.outbox = outbox if outbox is not None else AttemptOutbox()

    def chat(
        self,
        history: Sequence[HistoryEntry],
        question: Question,
        user_answer: Optional[str] = None,
    ) -> str:
        """Return the tutor's next reply. Backend failures propagate."""
        messages = self.composer.compose_tutor_context(history, question, user_answer)
        reply = self.llm_client.complete(messages, CHAT_OPTIONS)
        return reply.strip() or CHAT_FALLBACK_REPLY

    def hint(self, question: Question, history: Sequence[HistoryEntry]) -> str:
        """Return one guiding step. Backend failures propagate."""
        messages = self.composer.compose_hint_prompt(question, history)
        reply = self.llm_client.complete(messages, HINT_OPTIONS)
        return reply.strip() or HINT_FALLBACK_REPLY

    def evaluate(
        self,
        question: Question,
        user_answer: str,
        user_id: str,
        question_id: int,
    ) -> Evaluation:
        return self.evaluate_attempt(question, user_answer, user_id, question_id).evaluation

    def evaluate_attempt(
        self,
        question: Question,
        user_answer: str,
        user_id: str,
        question_id: int,
        *,
        study_minutes: int = 0,
    ) -> AttemptOutcome:
        """Judge ``user_answer`` and record the attempt.

        Never raises for backend or store trouble. When the backend fails the
        default evaluation is returned and nothing is recorded. When the store
        fails the evaluation is still returned, the attempt is queued in the
        outbox and ``persisted`` is ``False``.
        """
        messages = self.composer.compose_evaluation_messages(question, user_answer)
        try:
            raw = self.llm_client.complete(messages, EVALUATION_OPTIONS)
        except GenerativeBackendFailure as exc:
            _LOGGER.warning(
                "Evaluation backend failed for user %s question %s: %s", user_id, question_id, exc
            )
            return AttemptOutcome(evaluation=default_evaluation(), backend_available=False)

        evaluation = parse_evaluation(raw)
        attempted_at = datetime.now(timezone.utc)
        try:
            progress, stats = self.aggregator.record_attempt(
                user_id,
                question_id,
                evaluation,
                user_answer,
                study_minutes=study_minutes,
                now=attempted_at,
            )
        except PersistenceFailure as exc:
            _LOGGER.error(
                "Evaluation for user %s question %s computed but not persisted: %s",
                user_id,
                question_id,
                exc,
            )
            self.outbox.enqueue(
                PendingAttempt(
                    user_id=user_id,
                    question_id=question_id,
                    evaluation=evaluation,
                    user_answer=user_answer,
                    study_minutes=study_minutes,
                    attempted_at=attempted_at,
                    last_error=str(exc),
                )
            )
            return AttemptOutcome(evaluation=evaluation, persisted=False)

        return AttemptOutcome(evaluation=evaluation, progress=progress, stats=stats, persisted=True)

    def replay_pending(self) -> int:
        return self.outbox.replay(self.aggregator)
