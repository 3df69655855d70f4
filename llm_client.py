"""Narrow request/response boundary to an OpenAI-compatible chat-completions service."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Union
from uuid import uuid4

import requests

from env_validation import safe_float
from schemas import Message

logger = logging.getLogger(__name__)
_LLM_LOGGER = logging.getLogger("tutoring.llm")

ResponseFormat = Literal["free_text", "structured_json"]

DEFAULT_LLM_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL_ID = "gpt-4o"


class GenerativeBackendFailure(Exception):
    """Base class for failures talking to the generative backend."""


class BackendUnavailable(GenerativeBackendFailure):
    """The backend could not be reached (connection error or timeout)."""


class BackendError(GenerativeBackendFailure):
    """The backend answered with a non-success status or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CompletionOptions:
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    response_format: ResponseFormat = "free_text"
    timeout: Optional[float] = None


MessageLike = Union[Message, Mapping[str, Any]]


def _message_payload(message: MessageLike) -> Dict[str, str]:
    if isinstance(message, Message):
        return {"role": message.role, "content": message.content}
    return {"role": str(message["role"]), "content": str(message["content"])}


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _content_text(content: Any) -> Optional[str]:
    """Completion text as ``str``; ``None`` when the content has no usable form."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # Content-part lists: [{"type": "text", "text": "..."}, ...]
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return None


class LLMClient:
    """Synchronous client for the text-completion backend.

    Performs no retries and no validation of completion content; callers own
    failure handling and parsing. One instance is created at process start and
    passed to the orchestrator; call :meth:`close` on shutdown.
    """

    def __init__(
        self,
        url: str = DEFAULT_LLM_URL,
        model: str = DEFAULT_MODEL_ID,
        *,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.url = url
        self.model = model
        self.timeout = float(timeout)
        self._session = session or requests.Session()
        self._owns_session = session is None
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_env(cls, session: Optional[requests.Session] = None) -> "LLMClient":
        return cls(
            url=os.getenv("LLM_URL") or DEFAULT_LLM_URL,
            model=os.getenv("MODEL_ID") or DEFAULT_MODEL_ID,
            api_key=os.getenv("OPENAI_API_KEY"),
            timeout=safe_float("LLM_TIMEOUT", 60.0),
            session=session,
        )

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _build_payload(self, messages: Sequence[MessageLike], options: CompletionOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [_message_payload(message) for message in messages],
            "temperature": float(options.temperature),
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = int(options.max_tokens)
        if options.response_format == "structured_json":
            payload["response_format"] = {"type": "json_object"}
        return payload

    def complete(self, messages: Sequence[MessageLike], options: Optional[CompletionOptions] = None) -> str:
        """Return the text of the top completion for ``messages``.

        Raises :class:`BackendUnavailable` on connection failures and timeouts,
        :class:`BackendError` on non-2xx responses or bodies without a completion.
        """
        options = options or CompletionOptions()
        payload = self._build_payload(messages, options)
        timeout = options.timeout if options.timeout is not None else self.timeout
        request_id = str(uuid4())
        start = time.perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        outcome = "ok"
        try:
            try:
                response = self._session.post(self.url, json=payload, timeout=timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                outcome = "unavailable"
                raise BackendUnavailable(f"LLM backend unreachable: {exc}") from exc
            except requests.RequestException as exc:
                outcome = "error"
                raise BackendError(f"LLM request failed: {exc}") from exc

            if not 200 <= response.status_code < 300:
                outcome = "error"
                raise BackendError(
                    f"LLM-HTTP {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as exc:
                outcome = "error"
                raise BackendError("LLM response body is not JSON", status_code=response.status_code) from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
                tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

            try:
                choice = data["choices"][0]
            except (KeyError, IndexError, TypeError) as exc:
                outcome = "error"
                raise BackendError(f"Unexpected LLM response: {str(data)[:300]}") from exc
            message = choice.get("message") if isinstance(choice, dict) else None
            if isinstance(message, dict) and "content" in message:
                text = _content_text(message.get("content"))
            elif isinstance(choice, dict) and "text" in choice:
                text = _content_text(choice.get("text"))
            else:
                text = None
            if text is None:
                outcome = "error"
                raise BackendError(f"Unexpected LLM response: {str(data)[:300]}")
            return text
        finally:
            log_record = {
                "event": "llm_call",
                "request_id": request_id,
                "model": self.model,
                "response_format": options.response_format,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
                "outcome": outcome,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))
