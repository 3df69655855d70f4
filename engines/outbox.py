"""In-process queue of attempts whose persistence failed, replayed out of band."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Deque, List, Optional

from schemas import Evaluation

if TYPE_CHECKING:
    from engines.progress import ProgressAggregator

_LOGGER = logging.getLogger(__name__)


@dataclass
class PendingAttempt:
    """An evaluated attempt waiting to be written to the store."""

    user_id: str
    question_id: int
    evaluation: Evaluation
    user_answer: Optional[str]
    study_minutes: int = 0
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    failures: int = 1
    last_error: Optional[str] = None


class AttemptOutbox:
    """Thread-safe FIFO of :class:`PendingAttempt` entries."""

    def __init__(self) -> None:
        self._queue: Deque[PendingAttempt] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def enqueue(self, attempt: PendingAttempt) -> None:
        with self._lock:
            self._queue.append(attempt)
            size = len(self._queue)
        _LOGGER.warning(
            "Queued attempt for user %s question %s for replay (outbox size: %d)",
            attempt.user_id,
            attempt.question_id,
            size,
        )

    def pending(self) -> List[PendingAttempt]:
        with self._lock:
            return list(self._queue)

    def replay(self, aggregator: "ProgressAggregator") -> int:
        """Retry every queued attempt once, in order; return how many were written.

        Attempts that fail again stay queued with their failure count raised.
        Replays reuse the original attempt time so streaks are credited to the
        day the learner actually answered.
        """
        from engines.progress import PersistenceFailure

        with self._lock:
            batch = list(self._queue)
            self._queue.clear()

        written = 0
        still_pending: List[PendingAttempt] = []
        for attempt in batch:
            try:
                aggregator.record_attempt(
                    attempt.user_id,
                    attempt.question_id,
                    attempt.evaluation,
                    attempt.user_answer,
                    study_minutes=attempt.study_minutes,
                    now=attempt.attempted_at,
                )
            except PersistenceFailure as exc:
                attempt.failures += 1
                attempt.last_error = str(exc)
                still_pending.append(attempt)
                continue
            written += 1

        if still_pending:
            with self._lock:
                self._queue.extendleft(reversed(still_pending))
            _LOGGER.error("%d attempt(s) still pending after replay", len(still_pending))
        if written:
            _LOGGER.info("Replayed %d pending attempt(s)", written)
        return written
