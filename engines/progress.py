"""Per-question progress and per-user statistics aggregation.

Every recorded attempt updates two aggregates: the learner's progress on the
question (attempt counters, latest answer and score, completion flag) and the
learner's rolling statistics (totals, daily streak, study time). Both
read-modify-writes run in one ``BEGIN IMMEDIATE`` transaction so that
concurrent attempts by the same learner serialize instead of losing
increments.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional, Tuple

import db
from env_validation import completion_policy as _configured_completion_policy
from schemas import Evaluation, ProgressRecord, StatsRecord

_LOGGER = logging.getLogger(__name__)
_EVENT_LOGGER = logging.getLogger("tutoring.progress")

CompletionPolicy = Literal["sticky", "latest"]


class PersistenceFailure(Exception):
    """The entity store rejected or timed out while recording an attempt."""

    def __init__(self, message: str, *, user_id: str, question_id: int):
        super().__init__(message)
        self.user_id = user_id
        self.question_id = question_id


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        message = json.dumps({"event": event, "payload_repr": repr(payload)}, sort_keys=True)
    _EVENT_LOGGER.info(message)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def next_streak(previous_activity: Optional[date], today: date, current_streak: int) -> int:
    """Return the streak after activity on ``today``.

    Activity on the calendar day after the previous one extends the streak,
    activity on the same day leaves it unchanged, anything else starts over
    at one.
    """
    if previous_activity is None:
        return 1
    if previous_activity == today:
        return current_streak
    if previous_activity == today - timedelta(days=1):
        return current_streak + 1
    return 1


class ProgressAggregator:
    """Applies evaluations to progress and statistics records.

    Parameters
    ----------
    completion_policy:
        ``"sticky"`` keeps a question completed once any attempt was correct.
        ``"latest"`` mirrors the correctness of the most recent attempt, so a
        later wrong answer un-completes the question. Defaults to the
        ``COMPLETION_POLICY`` environment variable, else ``"sticky"``.
    db_module:
        Store module providing ``transaction`` and the row helpers; injectable
        for tests.
    """

    def __init__(
        self,
        completion_policy: Optional[CompletionPolicy] = None,
        *,
        db_module=db,
    ) -> None:
        policy = completion_policy or _configured_completion_policy()
        if policy not in ("sticky", "latest"):
            raise ValueError("completion_policy must be 'sticky' or 'latest'")
        self.completion_policy: CompletionPolicy = policy
        self._db = db_module

    # ----- public API --------------------------------------------------
    def record_attempt(
        self,
        user_id: str,
        question_id: int,
        evaluation: Evaluation,
        user_answer: Optional[str],
        *,
        study_minutes: int = 0,
        now: Optional[datetime] = None,
    ) -> Tuple[ProgressRecord, StatsRecord]:
        """Record one evaluated attempt and return the updated records.

        Raises :class:`PersistenceFailure` when the store fails; nothing is
        written in that case.
        """
        if not user_id:
            raise ValueError("user_id is required")
        if study_minutes < 0:
            raise ValueError("study_minutes cannot be negative")

        moment = _as_utc(now or _utc_now())
        try:
            with self._db.transaction() as con:
                self._db.ensure_user(user_id, con=con)

                existing = self._db.get_progress(user_id, question_id, con=con)
                progress = self._next_progress(existing, user_id, question_id, evaluation, user_answer, moment)
                if existing is None:
                    self._db.insert_progress(con, progress)
                else:
                    self._db.update_progress(con, progress)

                self._db.ensure_stats_row(con, user_id)
                previous_stats = self._db.get_stats(user_id, con=con)
                stats = self._next_stats(previous_stats, user_id, evaluation, moment.date(), study_minutes)
                self._db.update_stats(con, stats)
        except sqlite3.Error as exc:
            _LOGGER.error(
                "Failed to persist attempt for user %s question %s: %s", user_id, question_id, exc
            )
            raise PersistenceFailure(
                f"Could not record attempt: {exc}", user_id=user_id, question_id=question_id
            ) from exc

        _json_log(
            "attempt_recorded",
            {
                "user_id": user_id,
                "question_id": question_id,
                "is_correct": evaluation.is_correct,
                "score": evaluation.score,
                "attempts": progress.attempts,
                "is_completed": progress.is_completed,
                "completion_policy": self.completion_policy,
                "current_streak": stats.current_streak,
                "total_attempted": stats.total_questions_attempted,
            },
        )
        return progress, stats

    # ----- transitions -------------------------------------------------
    def _next_progress(
        self,
        existing: Optional[ProgressRecord],
        user_id: str,
        question_id: int,
        evaluation: Evaluation,
        user_answer: Optional[str],
        moment: datetime,
    ) -> ProgressRecord:
        correct = 1 if evaluation.is_correct else 0
        if existing is None:
            return ProgressRecord(
                user_id=user_id,
                question_id=question_id,
                attempts=1,
                correct_attempts=correct,
                last_attempted_at=moment,
                is_completed=evaluation.is_correct,
                user_answer=user_answer,
                score=evaluation.score,
            )

        if self.completion_policy == "sticky":
            completed = existing.is_completed or evaluation.is_correct
        else:
            completed = evaluation.is_correct
        return existing.model_copy(
            update={
                "attempts": existing.attempts + 1,
                "correct_attempts": existing.correct_attempts + correct,
                "last_attempted_at": moment,
                "is_completed": completed,
                "user_answer": user_answer,
                "score": evaluation.score,
            }
        )

    def _next_stats(
        self,
        previous: Optional[StatsRecord],
        user_id: str,
        evaluation: Evaluation,
        today: date,
        study_minutes: int,
    ) -> StatsRecord:
        previous = previous or StatsRecord(user_id=user_id)
        streak = next_streak(previous.last_activity_date, today, previous.current_streak)
        # An out-of-order replay must not move the activity date backwards.
        last_activity = today
        if previous.last_activity_date and previous.last_activity_date > today:
            last_activity = previous.last_activity_date
            streak = previous.current_streak
        return StatsRecord(
            user_id=user_id,
            total_questions_attempted=previous.total_questions_attempted + 1,
            total_questions_correct=previous.total_questions_correct + (1 if evaluation.is_correct else 0),
            current_streak=streak,
            longest_streak=max(previous.longest_streak, streak),
            last_activity_date=last_activity,
            total_study_time_minutes=previous.total_study_time_minutes + int(study_minutes),
        )
