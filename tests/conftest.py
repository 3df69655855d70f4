import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db
    import item_bank

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    # Reset the connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10, busy_timeout=10.0))
    monkeypatch.setattr(item_bank, "_QUESTIONS_SEEDED", False)
    db.init()
    yield str(db_path)
    db._pool.close_all()


class FakeLLMClient:
    """Stands in for ``LLMClient``: returns queued replies or raises queued errors."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []
        self.closed = False

    def complete(self, messages, options=None):
        self.calls.append({"messages": list(messages), "options": options})
        if not self.replies:
            return ""
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def close(self):
        self.closed = True


@pytest.fixture
def fake_llm():
    return FakeLLMClient


@pytest.fixture
def sample_question():
    from schemas import Question

    return Question(
        id=7,
        subject="mathematics",
        difficulty="easy",
        question_type="short_answer",
        title="Arithmetic",
        content="What is 2+2?",
        correct_answer="4",
        explanation="Adding two and two gives four.",
    )
