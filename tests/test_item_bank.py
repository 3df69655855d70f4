import json

import pytest

import db
import item_bank
from item_bank import ItemValidationError, QUESTION_BANK, ensure_seed_questions, load_question_file, validate_entries


def test_builtin_bank_is_valid():
    questions = validate_entries(QUESTION_BANK)

    assert len(questions) == len(QUESTION_BANK)
    assert {q.subject for q in questions} == {"mathematics", "physics", "chemistry", "biology"}
    for question in questions:
        if question.question_type == "multiple_choice":
            assert question.correct_answer in question.options


def test_duplicate_questions_rejected():
    with pytest.raises(ItemValidationError, match="Duplicate"):
        validate_entries([QUESTION_BANK[0], dict(QUESTION_BANK[0])])


def test_invalid_entry_reports_index():
    with pytest.raises(ItemValidationError, match="#1"):
        validate_entries([QUESTION_BANK[1], {"subject": "physics"}])


def test_load_question_file(tmp_path):
    path = tmp_path / "bank.json"
    path.write_text(
        json.dumps(
            [
                {
                    "subject": "economics",
                    "type": "short_answer",
                    "content": "Define opportunity cost.",
                    "correctAnswer": "The value of the next best alternative forgone.",
                }
            ]
        ),
        encoding="utf-8",
    )

    questions = load_question_file(path)

    assert questions[0].subject == "economics"


def test_load_question_file_requires_list(tmp_path):
    path = tmp_path / "bank.json"
    path.write_text(json.dumps({"subject": "economics"}), encoding="utf-8")

    with pytest.raises(ItemValidationError):
        load_question_file(path)

    with pytest.raises(FileNotFoundError):
        load_question_file(tmp_path / "missing.json")


def test_seed_runs_once_and_is_idempotent(temp_db, monkeypatch):
    assert ensure_seed_questions() == len(QUESTION_BANK)
    assert ensure_seed_questions() == 0

    monkeypatch.setattr(item_bank, "_QUESTIONS_SEEDED", False)
    ensure_seed_questions()

    assert len(db.list_questions()) == len(QUESTION_BANK)
    assert len(db.list_subjects()) == len(item_bank.SUBJECT_DESCRIPTIONS)


def test_seeded_question_round_trips_through_store(temp_db):
    ensure_seed_questions()

    stored = next(q for q in db.list_questions("biology") if q.question_type == "multiple_choice")
    fetched = db.get_question(stored.id)

    assert fetched == stored
    assert fetched.options == {"A": "Mitochondria", "B": "Chloroplast", "C": "Nucleus", "D": "Ribosome"}
    assert fetched.correct_answer == "B"
    assert "photosynthesis" in fetched.tags
