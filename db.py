import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, Optional

from db_pool import SQLiteConnectionPool
from env_validation import safe_float, safe_int
from schemas import SUBJECTS, ProgressRecord, Question, StatsRecord

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(
    DB_PATH,
    max_connections=max(1, safe_int("DB_MAX_CONNECTIONS", 10)),
    busy_timeout=safe_float("DB_BUSY_TIMEOUT", 30.0),
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


@contextmanager
def transaction() -> Generator[sqlite3.Connection, None, None]:
    """Yield a pooled connection inside a ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken before the first read, so two read-modify-write
    sequences on the same rows never interleave. Commits on normal exit and
    rolls back on any exception, including ``KeyboardInterrupt``.
    """
    with _pool.get_connection() as con:
        con.execute("BEGIN IMMEDIATE")
        try:
            yield con
        except BaseException:
            con.rollback()
            raise
        else:
            con.commit()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id          TEXT PRIMARY KEY,
              email       TEXT,
              first_name  TEXT,
              last_name   TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS subjects (
              name          TEXT PRIMARY KEY,
              display_name  TEXT NOT NULL,
              description   TEXT,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
              id                   INTEGER PRIMARY KEY AUTOINCREMENT,
              subject              TEXT NOT NULL REFERENCES subjects(name),
              question_type        TEXT NOT NULL
                                   CHECK (question_type IN ('multiple_choice','short_answer','essay','calculation')),
              difficulty           TEXT NOT NULL CHECK (difficulty IN ('easy','medium','hard')),
              title                TEXT,
              content              TEXT NOT NULL,
              options              TEXT,
              correct_answer       TEXT NOT NULL,
              explanation          TEXT NOT NULL DEFAULT '',
              tags                 TEXT,
              learning_objectives  TEXT,
              created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE (subject, content)
            );

            CREATE INDEX IF NOT EXISTS idx_questions_subject ON questions(subject);

            CREATE TABLE IF NOT EXISTS user_progress (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id            TEXT NOT NULL REFERENCES users(id),
              question_id        INTEGER NOT NULL,
              attempts           INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
              correct_attempts   INTEGER NOT NULL DEFAULT 0
                                 CHECK (correct_attempts >= 0 AND correct_attempts <= attempts),
              last_attempted_at  TEXT,
              is_completed       INTEGER NOT NULL DEFAULT 0,
              user_answer        TEXT,
              score              INTEGER CHECK (score IS NULL OR (score >= 0 AND score <= 100)),
              created_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE (user_id, question_id)
            );

            CREATE INDEX IF NOT EXISTS idx_user_progress_user ON user_progress(user_id);

            CREATE TABLE IF NOT EXISTS user_stats (
              id                         INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id                    TEXT NOT NULL UNIQUE REFERENCES users(id),
              total_questions_attempted  INTEGER NOT NULL DEFAULT 0 CHECK (total_questions_attempted >= 0),
              total_questions_correct    INTEGER NOT NULL DEFAULT 0
                                         CHECK (total_questions_correct >= 0
                                                AND total_questions_correct <= total_questions_attempted),
              current_streak             INTEGER NOT NULL DEFAULT 0 CHECK (current_streak >= 0),
              longest_streak             INTEGER NOT NULL DEFAULT 0 CHECK (longest_streak >= current_streak),
              last_activity_date         TEXT,
              total_study_time_minutes   INTEGER NOT NULL DEFAULT 0 CHECK (total_study_time_minutes >= 0),
              created_at                 TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at                 TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )


# -------------- helpers --------------
def json_dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _decode_json_field(value: Optional[str]) -> Any:
    if value in (None, ""):
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring undecodable JSON column value: %r", value)
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


# -------------- users --------------
def ensure_user(user_id: str, con: Optional[sqlite3.Connection] = None):
    sql = "INSERT OR IGNORE INTO users(id) VALUES (?)"
    if con is not None:
        con.execute(sql, (user_id,))
    else:
        _exec(sql, (user_id,))


def ensure_stats_row(con: sqlite3.Connection, user_id: str) -> None:
    con.execute("INSERT OR IGNORE INTO user_stats(user_id) VALUES (?)", (user_id,))


def onboard_user(
    user_id: str,
    *,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> StatsRecord:
    """Create the user and its all-zero stats row. Idempotent."""
    with transaction() as con:
        con.execute(
            """
            INSERT INTO users(id, email, first_name, last_name) VALUES (?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
              email=COALESCE(excluded.email, users.email),
              first_name=COALESCE(excluded.first_name, users.first_name),
              last_name=COALESCE(excluded.last_name, users.last_name),
              updated_at=CURRENT_TIMESTAMP
            """,
            (user_id, email, first_name, last_name),
        )
        ensure_stats_row(con, user_id)
        stats = get_stats(user_id, con=con)
        if stats is None:
            raise ValueError(f"stats not found for user {user_id}")
    return stats


# -------------- subjects & questions --------------
def upsert_subject(name: str, display_name: Optional[str] = None, description: Optional[str] = None):
    if name not in SUBJECTS:
        raise ValueError(f"Unknown subject '{name}'")
    _exec(
        """
        INSERT INTO subjects(name, display_name, description) VALUES (?,?,?)
        ON CONFLICT(name) DO UPDATE SET
          display_name=excluded.display_name,
          description=COALESCE(excluded.description, subjects.description)
        """,
        (name, display_name or SUBJECTS[name], description),
    )


def list_subjects() -> list[sqlite3.Row]:
    return _query("SELECT name, display_name, description FROM subjects ORDER BY name")


def upsert_question(question: Question) -> int:
    """Insert or refresh a catalog question keyed by (subject, content); returns its id."""
    upsert_subject(question.subject)
    params = (
        question.subject,
        question.question_type,
        question.difficulty,
        question.title,
        question.content,
        json_dumps(question.options),
        question.correct_answer,
        question.explanation,
        json_dumps(list(question.tags)),
        json_dumps(list(question.learning_objectives)),
    )
    with _conn() as con:
        con.execute(
            """
            INSERT INTO questions(
              subject, question_type, difficulty, title, content, options,
              correct_answer, explanation, tags, learning_objectives
            ) VALUES (?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(subject, content) DO UPDATE SET
              question_type=excluded.question_type,
              difficulty=excluded.difficulty,
              title=excluded.title,
              options=excluded.options,
              correct_answer=excluded.correct_answer,
              explanation=excluded.explanation,
              tags=excluded.tags,
              learning_objectives=excluded.learning_objectives,
              updated_at=CURRENT_TIMESTAMP
            """,
            params,
        )
        row = con.execute(
            "SELECT id FROM questions WHERE subject = ? AND content = ?",
            (question.subject, question.content),
        ).fetchone()
    return int(row["id"])


def _row_to_question(row: sqlite3.Row) -> Question:
    return Question(
        id=int(row["id"]),
        subject=row["subject"],
        question_type=row["question_type"],
        difficulty=row["difficulty"],
        title=row["title"],
        content=row["content"],
        options=_decode_json_field(row["options"]),
        correct_answer=row["correct_answer"],
        explanation=row["explanation"] or "",
        tags=_decode_json_field(row["tags"]) or [],
        learning_objectives=_decode_json_field(row["learning_objectives"]) or [],
    )


def get_question(question_id: int) -> Optional[Question]:
    rows = _query("SELECT * FROM questions WHERE id = ?", (int(question_id),))
    return _row_to_question(rows[0]) if rows else None


def list_questions(subject: Optional[str] = None, limit: int = 100) -> list[Question]:
    if subject:
        rows = _query(
            "SELECT * FROM questions WHERE subject = ? ORDER BY id LIMIT ?",
            (subject, int(limit)),
        )
    else:
        rows = _query("SELECT * FROM questions ORDER BY id LIMIT ?", (int(limit),))
    return [_row_to_question(row) for row in rows]


# -------------- progress --------------
_PROGRESS_COLUMNS = (
    "user_id, question_id, attempts, correct_attempts, last_attempted_at, is_completed, user_answer, score"
)


def _row_to_progress(row: sqlite3.Row) -> ProgressRecord:
    return ProgressRecord(
        user_id=row["user_id"],
        question_id=int(row["question_id"]),
        attempts=int(row["attempts"]),
        correct_attempts=int(row["correct_attempts"]),
        last_attempted_at=_parse_timestamp(row["last_attempted_at"]),
        is_completed=bool(row["is_completed"]),
        user_answer=row["user_answer"],
        score=None if row["score"] is None else int(row["score"]),
    )


def get_progress(
    user_id: str, question_id: int, con: Optional[sqlite3.Connection] = None
) -> Optional[ProgressRecord]:
    sql = f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE user_id = ? AND question_id = ?"
    params = (user_id, int(question_id))
    if con is not None:
        row = con.execute(sql, params).fetchone()
    else:
        rows = _query(sql, params)
        row = rows[0] if rows else None
    return _row_to_progress(row) if row else None


def insert_progress(con: sqlite3.Connection, record: ProgressRecord) -> None:
    con.execute(
        f"""
        INSERT INTO user_progress({_PROGRESS_COLUMNS})
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            record.user_id,
            record.question_id,
            record.attempts,
            record.correct_attempts,
            record.last_attempted_at.isoformat() if record.last_attempted_at else None,
            int(record.is_completed),
            record.user_answer,
            record.score,
        ),
    )


def update_progress(con: sqlite3.Connection, record: ProgressRecord) -> None:
    con.execute(
        """
        UPDATE user_progress SET
          attempts = ?,
          correct_attempts = ?,
          last_attempted_at = ?,
          is_completed = ?,
          user_answer = ?,
          score = ?,
          updated_at = CURRENT_TIMESTAMP
        WHERE user_id = ? AND question_id = ?
        """,
        (
            record.attempts,
            record.correct_attempts,
            record.last_attempted_at.isoformat() if record.last_attempted_at else None,
            int(record.is_completed),
            record.user_answer,
            record.score,
            record.user_id,
            record.question_id,
        ),
    )


def list_user_progress(user_id: str, limit: int = 500) -> list[ProgressRecord]:
    rows = _query(
        f"""
        SELECT {_PROGRESS_COLUMNS} FROM user_progress
        WHERE user_id = ?
        ORDER BY last_attempted_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, int(limit)),
    )
    return [_row_to_progress(row) for row in rows]


def subject_progress_summary(user_id: str) -> list[Dict[str, Any]]:
    """Per-subject attempted/completed counts joined against the catalog."""
    rows = _query(
        """
        SELECT q.subject AS subject,
               COUNT(DISTINCT q.id) AS total_questions,
               COUNT(p.id) AS attempted,
               COALESCE(SUM(p.is_completed), 0) AS completed,
               AVG(p.score) AS average_score
        FROM questions q
        LEFT JOIN user_progress p ON p.question_id = q.id AND p.user_id = ?
        GROUP BY q.subject
        ORDER BY q.subject
        """,
        (user_id,),
    )
    summary: list[Dict[str, Any]] = []
    for row in rows:
        average = row["average_score"]
        summary.append(
            {
                "subject": row["subject"],
                "displayName": SUBJECTS.get(row["subject"], row["subject"]),
                "totalQuestions": int(row["total_questions"]),
                "attempted": int(row["attempted"]),
                "completed": int(row["completed"]),
                "averageScore": None if average is None else round(float(average), 1),
            }
        )
    return summary


# -------------- stats --------------
_STATS_COLUMNS = (
    "user_id, total_questions_attempted, total_questions_correct, current_streak, "
    "longest_streak, last_activity_date, total_study_time_minutes"
)


def _row_to_stats(row: sqlite3.Row) -> StatsRecord:
    return StatsRecord(
        user_id=row["user_id"],
        total_questions_attempted=int(row["total_questions_attempted"]),
        total_questions_correct=int(row["total_questions_correct"]),
        current_streak=int(row["current_streak"]),
        longest_streak=int(row["longest_streak"]),
        last_activity_date=_parse_date(row["last_activity_date"]),
        total_study_time_minutes=int(row["total_study_time_minutes"]),
    )


def get_stats(user_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[StatsRecord]:
    sql = f"SELECT {_STATS_COLUMNS} FROM user_stats WHERE user_id = ?"
    if con is not None:
        row = con.execute(sql, (user_id,)).fetchone()
    else:
        rows = _query(sql, (user_id,))
        row = rows[0] if rows else None
    return _row_to_stats(row) if row else None


def update_stats(con: sqlite3.Connection, record: StatsRecord) -> None:
    con.execute(
        """
        UPDATE user_stats SET
          total_questions_attempted = ?,
          total_questions_correct = ?,
          current_streak = ?,
          longest_streak = ?,
          last_activity_date = ?,
          total_study_time_minutes = ?,
          updated_at = CURRENT_TIMESTAMP
        WHERE user_id = ?
        """,
        (
            record.total_questions_attempted,
            record.total_questions_correct,
            record.current_streak,
            record.longest_streak,
            record.last_activity_date.isoformat() if record.last_activity_date else None,
            record.total_study_time_minutes,
            record.user_id,
        ),
    )
