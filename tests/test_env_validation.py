import os

import pytest

import env_validation
from env_validation import (
    EnvironmentError,
    completion_policy,
    get_env_bool,
    safe_float,
    safe_int,
    validate_environment,
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in (
        "DB_PATH",
        "MODEL_ID",
        "LLM_URL",
        "COMPLETION_POLICY",
        "LLM_TIMEOUT",
        "DB_BUSY_TIMEOUT",
        "DB_MAX_CONNECTIONS",
    ):
        # registered so teardown restores it
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    return monkeypatch


def test_defaults_applied(clean_env):
    validate_environment()

    assert os.environ["MODEL_ID"] == "gpt-4o"
    assert os.environ["LLM_URL"].startswith("https://")


def test_bad_url_rejected(clean_env):
    clean_env.setenv("LLM_URL", "ftp://llm")

    with pytest.raises(EnvironmentError):
        validate_environment()


@pytest.mark.parametrize(
    ("var", "value"),
    [
        ("LLM_TIMEOUT", "soon"),
        ("LLM_TIMEOUT", "0"),
        ("DB_BUSY_TIMEOUT", "-3"),
        ("DB_MAX_CONNECTIONS", "0"),
        ("DB_MAX_CONNECTIONS", "many"),
    ],
)
def test_bad_numeric_settings_rejected(clean_env, var, value):
    clean_env.setenv(var, value)

    with pytest.raises(EnvironmentError):
        validate_environment()


def test_completion_policy(clean_env):
    assert completion_policy() == "sticky"
    clean_env.setenv("COMPLETION_POLICY", " Latest ")
    assert completion_policy() == "latest"
    validate_environment()

    clean_env.setenv("COMPLETION_POLICY", "forever")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_helpers(monkeypatch):
    monkeypatch.setenv("SEED_QUESTIONS", "yes")
    monkeypatch.setenv("LLM_TIMEOUT", "bogus")
    assert get_env_bool("SEED_QUESTIONS") is True
    assert get_env_bool("UNSET_FLAG_FOR_TEST", True) is True
    assert safe_float("LLM_TIMEOUT", 60.0) == 60.0
    assert "OPENAI_API_KEY" not in env_validation.env_summary()


def test_safe_int(monkeypatch):
    monkeypatch.setenv("DB_MAX_CONNECTIONS", "4")
    assert safe_int("DB_MAX_CONNECTIONS", 10) == 4

    monkeypatch.setenv("DB_MAX_CONNECTIONS", "four")
    assert safe_int("DB_MAX_CONNECTIONS", 10) == 10

    monkeypatch.delenv("DB_MAX_CONNECTIONS")
    assert safe_int("DB_MAX_CONNECTIONS", 10) == 10


def test_pool_size_comes_from_environment(monkeypatch, tmp_path):
    import importlib

    import db

    monkeypatch.setenv("DB_PATH", str(tmp_path / "sized.db"))
    monkeypatch.setenv("DB_MAX_CONNECTIONS", "3")
    try:
        reloaded = importlib.reload(db)
        assert reloaded._pool.max_connections == 3
    finally:
        monkeypatch.undo()
        importlib.reload(db)
