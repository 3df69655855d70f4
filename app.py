# app.py: IB tutoring API
# - /ai/chat and /ai/hint: Socratic dialogue, no persisted state
# - /ai/evaluate: structured judgment + progress/stats update
# - identity comes from a trusted gateway header

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import db
import item_bank
from engines.orchestrator import TutoringOrchestrator
from engines.progress import ProgressAggregator
from env_validation import env_summary, get_env_bool, validate_environment
from llm_client import GenerativeBackendFailure, LLMClient
from schemas import Message, Question, StatsRecord

logger = logging.getLogger(__name__)

IDENTITY_HEADER = os.getenv("IDENTITY_HEADER", "x-user-id")
_PROTECTED_PREFIXES = ("/ai/", "/users/", "/dashboard", "/admin/")

CHAT_ERROR_DETAIL = "Failed to get AI response. Please try again."
HINT_ERROR_DETAIL = "Failed to generate hint. Please try again."


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        validate_environment()
        db.init()
        if get_env_bool("SEED_QUESTIONS", True):
            item_bank.ensure_seed_questions()
        llm_client = LLMClient.from_env()
        app.state.orchestrator = TutoringOrchestrator(llm_client, ProgressAggregator())
        logger.info("Tutoring service configured: %s", env_summary())
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        orchestrator: TutoringOrchestrator = app.state.orchestrator
        if len(orchestrator.outbox):
            orchestrator.replay_pending()
        orchestrator.llm_client.close()


app = FastAPI(title="IB Tutor", version="1.0.0", lifespan=_lifespan)


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _is_protected(path: str) -> bool:
    normalized = _normalize_path(path)
    return any(normalized == prefix.rstrip("/") or normalized.startswith(prefix) for prefix in _PROTECTED_PREFIXES)


@app.middleware("http")
async def _enforce_identity(request: Request, call_next):
    if _is_protected(request.url.path):
        user_id = (request.headers.get(IDENTITY_HEADER) or "").strip()
        if not user_id:
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        request.state.user_id = user_id
    return await call_next(request)


def _current_user(request: Request) -> str:
    return request.state.user_id


def _orchestrator(request: Request) -> TutoringOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Tutoring service is not initialised")
    return orchestrator


# ---------- Schemas ----------
class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatBody(_Body):
    messages: List[Message] = Field(default_factory=list)
    question: Question
    user_answer: Optional[str] = None


class HintBody(_Body):
    question: Question
    conversation_history: List[Message] = Field(default_factory=list)


class EvaluateBody(_Body):
    question: Optional[Question] = None
    question_id: Optional[int] = None
    user_answer: str
    study_minutes: int = Field(default=0, ge=0, le=24 * 60)


class OnboardBody(_Body):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def _dump(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(by_alias=True, mode="json")


# ---------- Tutoring ----------
@app.post("/ai/chat")
def chat(body: ChatBody, orchestrator: TutoringOrchestrator = Depends(_orchestrator)):
    try:
        reply = orchestrator.chat(body.messages, body.question, body.user_answer)
    except GenerativeBackendFailure as exc:
        logger.error("AI chat error: %s", exc)
        raise HTTPException(status_code=502, detail=CHAT_ERROR_DETAIL) from exc
    return {"response": reply}


@app.post("/ai/hint")
def hint(body: HintBody, orchestrator: TutoringOrchestrator = Depends(_orchestrator)):
    try:
        text = orchestrator.hint(body.question, body.conversation_history)
    except GenerativeBackendFailure as exc:
        logger.error("Hint generation error: %s", exc)
        raise HTTPException(status_code=502, detail=HINT_ERROR_DETAIL) from exc
    return {"hint": text}


@app.post("/ai/evaluate")
def evaluate(
    body: EvaluateBody,
    user_id: str = Depends(_current_user),
    orchestrator: TutoringOrchestrator = Depends(_orchestrator),
):
    question_id = body.question_id if body.question_id is not None else (body.question.id if body.question else None)
    if question_id is None:
        raise HTTPException(status_code=400, detail="questionId required")

    question = body.question
    if question is None:
        question = db.get_question(question_id)
        if question is None:
            raise HTTPException(status_code=404, detail="question not found")

    outcome = orchestrator.evaluate_attempt(
        question,
        body.user_answer,
        user_id,
        question_id,
        study_minutes=body.study_minutes,
    )
    payload = _dump(outcome.evaluation) or {}
    payload.update(
        {
            "persisted": outcome.persisted,
            "backendAvailable": outcome.backend_available,
            "progress": _dump(outcome.progress),
            "stats": _dump(outcome.stats),
        }
    )
    return payload


# ---------- Users & dashboard ----------
@app.post("/users/onboard")
def onboard(body: Optional[OnboardBody] = None, user_id: str = Depends(_current_user)):
    body = body or OnboardBody()
    stats = db.onboard_user(
        user_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return {"stats": _dump(stats)}


@app.get("/dashboard")
def dashboard(user_id: str = Depends(_current_user)):
    stats = db.get_stats(user_id) or StatsRecord(user_id=user_id)
    recent = db.list_user_progress(user_id, limit=10)
    return {
        "stats": _dump(stats),
        "accuracy": stats.accuracy_percent,
        "subjects": db.subject_progress_summary(user_id),
        "recentProgress": [_dump(record) for record in recent],
    }


# ---------- Catalog ----------
@app.get("/subjects")
def subjects():
    return {
        "subjects": [
            {"name": row["name"], "displayName": row["display_name"], "description": row["description"]}
            for row in db.list_subjects()
        ]
    }


@app.get("/questions")
def questions(subject: Optional[str] = None, limit: int = 100):
    return {"questions": [_dump(question) for question in db.list_questions(subject, limit=limit)]}


@app.get("/questions/{question_id}")
def question_detail(question_id: int):
    question = db.get_question(question_id)
    if question is None:
        raise HTTPException(status_code=404, detail="question not found")
    return _dump(question)


# ---------- Outbox ----------
@app.get("/admin/outbox")
def outbox_status(orchestrator: TutoringOrchestrator = Depends(_orchestrator)):
    pending = orchestrator.outbox.pending()
    return {
        "pending": len(pending),
        "attempts": [
            {
                "userId": attempt.user_id,
                "questionId": attempt.question_id,
                "attemptedAt": attempt.attempted_at.isoformat(),
                "failures": attempt.failures,
                "lastError": attempt.last_error,
            }
            for attempt in pending
        ],
    }


@app.post("/admin/outbox/replay")
def outbox_replay(orchestrator: TutoringOrchestrator = Depends(_orchestrator)):
    written = orchestrator.replay_pending()
    return {"replayed": written, "pending": len(orchestrator.outbox)}
