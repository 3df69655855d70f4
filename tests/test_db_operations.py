import sqlite3

import pytest

import db
from db_pool import SQLiteConnectionPool
from schemas import ProgressRecord, StatsRecord


def test_onboard_user_creates_zero_stats_and_is_idempotent(temp_db):
    stats = db.onboard_user("u1", email="u1@example.org", first_name="Una")

    assert stats == StatsRecord(user_id="u1")

    again = db.onboard_user("u1", last_name="Ng")
    assert again == stats
    row = db._query("SELECT email, first_name, last_name FROM users WHERE id = ?", ("u1",))[0]
    assert (row["email"], row["first_name"], row["last_name"]) == ("u1@example.org", "Una", "Ng")


def test_progress_is_unique_per_user_question(temp_db):
    record = ProgressRecord(user_id="u2", question_id=3, attempts=1)
    with db.transaction() as con:
        db.ensure_user("u2", con=con)
        db.insert_progress(con, record)

    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as con:
            db.insert_progress(con, record)


def test_transaction_rolls_back_on_error(temp_db):
    with pytest.raises(RuntimeError):
        with db.transaction() as con:
            db.ensure_user("u3", con=con)
            raise RuntimeError("abort")

    assert db._query("SELECT id FROM users WHERE id = ?", ("u3",)) == []


def test_store_enforces_stats_invariants(temp_db):
    db.onboard_user("u4")
    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as con:
            con.execute(
                "UPDATE user_stats SET total_questions_attempted = 1, total_questions_correct = 2 WHERE user_id = ?",
                ("u4",),
            )


def test_pool_reuses_and_limits_connections(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=2, busy_timeout=1.0)
    with pool.get_connection() as first:
        with pool.get_connection() as second:
            assert first is not second
    with pool.get_connection() as again:
        assert again in (first, second)

    assert pool._created_connections == 2
    pool.close_all()
    assert pool._created_connections == 0


def test_pool_rolls_back_abandoned_transaction(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1)
    with pool.get_connection() as con:
        con.execute("CREATE TABLE t (x INTEGER)")
    with pool.get_connection() as con:
        con.execute("BEGIN")
        con.execute("INSERT INTO t VALUES (1)")
    with pool.get_connection() as con:
        assert con.in_transaction is False
        assert con.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    pool.close_all()


def test_onboard_user_raises_and_rolls_back_when_stats_row_missing(temp_db, monkeypatch):
    monkeypatch.setattr(db, "get_stats", lambda user_id, con=None: None)

    with pytest.raises(ValueError, match="stats not found"):
        db.onboard_user("u5", email="u5@example.org")

    assert db._query("SELECT id FROM users WHERE id = ?", ("u5",)) == []
