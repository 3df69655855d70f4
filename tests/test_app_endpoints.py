import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
import item_bank
from engines.orchestrator import TutoringOrchestrator
from engines.progress import ProgressAggregator
from llm_client import BackendError, BackendUnavailable

USER = "student-42"

QUESTION = {
    "id": 1,
    "subject": "mathematics",
    "difficulty": "easy",
    "type": "short_answer",
    "content": "2+2?",
    "correctAnswer": "4",
    "explanation": "Count on from two.",
}


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    user: Optional[str] = USER,
):
    body = b""
    headers = [(b"host", b"testserver")]
    if user is not None:
        headers.append((app.IDENTITY_HEADER.encode(), user.encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path: str, payload: Optional[dict], **kwargs) -> tuple[int, dict]:
    return asyncio.run(_call_app("POST", path, payload=payload, **kwargs))


def _get(path: str, query: Optional[dict] = None, **kwargs) -> tuple[int, dict]:
    return asyncio.run(_call_app("GET", path, query=query, **kwargs))


@pytest.fixture
def install_llm(monkeypatch, fake_llm):
    def _install(*replies):
        client = fake_llm(*replies)
        orchestrator = TutoringOrchestrator(client, ProgressAggregator("sticky"))
        monkeypatch.setattr(app.app.state, "orchestrator", orchestrator, raising=False)
        return client

    return _install


def test_protected_routes_require_identity(temp_db, install_llm):
    install_llm("hello")

    status, payload = _post("/ai/chat", {"messages": [], "question": QUESTION}, user=None)
    assert status == 401
    assert payload == {"error": "Unauthorized"}

    status, _ = _get("/dashboard", user="   ")
    assert status == 401


def test_catalog_is_public(temp_db):
    item_bank.ensure_seed_questions()

    status, payload = _get("/subjects", user=None)
    assert status == 200
    names = [entry["name"] for entry in payload["subjects"]]
    assert "mathematics" in names

    status, payload = _get("/questions", {"subject": "physics"}, user=None)
    assert status == 200
    assert payload["questions"]
    assert all(q["subject"] == "physics" for q in payload["questions"])


def test_chat_returns_reply(temp_db, install_llm):
    client = install_llm("What is one more than three?")

    status, payload = _post(
        "/ai/chat",
        {"messages": [{"role": "user", "content": "Help"}], "question": QUESTION, "userAnswer": "5"},
    )

    assert status == 200
    assert payload == {"response": "What is one more than three?"}
    assert "Student's Current Answer: 5" in client.calls[0]["messages"][1].content


def test_chat_backend_failure_maps_to_502(temp_db, install_llm):
    install_llm(BackendUnavailable("timeout"))

    status, payload = _post("/ai/chat", {"messages": [], "question": QUESTION})

    assert status == 502
    assert payload["detail"] == app.CHAT_ERROR_DETAIL


def test_hint_returns_hint_and_maps_failures(temp_db, install_llm):
    install_llm("Try counting on your fingers.", BackendError("bad", status_code=500))

    status, payload = _post("/ai/hint", {"question": QUESTION, "conversationHistory": []})
    assert status == 200
    assert payload == {"hint": "Try counting on your fingers."}

    status, payload = _post("/ai/hint", {"question": QUESTION, "conversationHistory": []})
    assert status == 502
    assert payload["detail"] == app.HINT_ERROR_DETAIL


def test_invalid_message_role_rejected(temp_db, install_llm):
    install_llm("unused")

    status, _ = _post("/ai/chat", {"messages": [{"role": "tool", "content": "x"}], "question": QUESTION})

    assert status == 422


def test_evaluate_persists_for_header_identity(temp_db, install_llm):
    install_llm(json.dumps({"isCorrect": True, "score": 100, "feedback": "Correct", "suggestions": []}))

    status, payload = _post(
        "/ai/evaluate",
        {"question": QUESTION, "questionId": 1, "userAnswer": "4", "studyMinutes": 2},
    )

    assert status == 200
    assert payload["isCorrect"] is True
    assert payload["score"] == 100
    assert payload["feedback"] == "Correct"
    assert payload["suggestions"] == []
    assert payload["persisted"] is True
    assert payload["progress"]["isCompleted"] is True
    assert payload["stats"]["totalStudyTimeMinutes"] == 2
    assert db.get_progress(USER, 1).attempts == 1


def test_evaluate_loads_question_by_id(temp_db, install_llm):
    item_bank.ensure_seed_questions()
    question = db.list_questions("chemistry")[0]
    client = install_llm(json.dumps({"isCorrect": False, "score": 30, "feedback": "Check molar mass"}))

    status, payload = _post("/ai/evaluate", {"questionId": question.id, "userAnswer": "3 moles"})

    assert status == 200
    assert payload["score"] == 30
    assert question.content in client.calls[0]["messages"][1].content


def test_evaluate_unknown_question_is_404(temp_db, install_llm):
    install_llm("unused")

    status, _ = _post("/ai/evaluate", {"questionId": 999, "userAnswer": "x"})

    assert status == 404


def test_evaluate_without_question_id_is_400(temp_db, install_llm):
    install_llm("unused")
    question = {key: value for key, value in QUESTION.items() if key != "id"}

    status, payload = _post("/ai/evaluate", {"question": question, "userAnswer": "4"})

    assert status == 400
    assert payload["detail"] == "questionId required"


def test_evaluate_backend_failure_still_answers(temp_db, install_llm):
    install_llm(BackendUnavailable("down"))

    status, payload = _post("/ai/evaluate", {"question": QUESTION, "userAnswer": "4"})

    assert status == 200
    assert payload["isCorrect"] is False
    assert payload["feedback"] == "Unable to evaluate at this time."
    assert payload["persisted"] is False
    assert payload["backendAvailable"] is False
    assert db.get_progress(USER, 1) is None


def test_onboard_and_dashboard(temp_db, install_llm):
    item_bank.ensure_seed_questions()
    install_llm(
        json.dumps({"isCorrect": True, "score": 90, "feedback": "Good"}),
        json.dumps({"isCorrect": False, "score": 20, "feedback": "No"}),
    )

    status, payload = _post("/users/onboard", {"email": "s@example.org", "firstName": "Sam"})
    assert status == 200
    assert payload["stats"]["totalQuestionsAttempted"] == 0

    first, second = db.list_questions("mathematics")[:2]
    _post("/ai/evaluate", {"questionId": first.id, "userAnswer": "A"})
    _post("/ai/evaluate", {"questionId": second.id, "userAnswer": "wrong"})

    status, payload = _get("/dashboard")
    assert status == 200
    assert payload["stats"]["totalQuestionsAttempted"] == 2
    assert payload["stats"]["totalQuestionsCorrect"] == 1
    assert payload["accuracy"] == 50
    maths = next(s for s in payload["subjects"] if s["subject"] == "mathematics")
    assert maths["attempted"] == 2
    assert maths["completed"] == 1
    assert len(payload["recentProgress"]) == 2


def test_outbox_endpoints(temp_db, install_llm):
    install_llm("unused")

    status, payload = _get("/admin/outbox")
    assert status == 200
    assert payload == {"pending": 0, "attempts": []}

    status, payload = _post("/admin/outbox/replay", None)
    assert status == 200
    assert payload == {"replayed": 0, "pending": 0}
