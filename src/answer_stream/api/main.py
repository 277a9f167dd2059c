"""FastAPI entrypoint for threads, answer streams and trace endpoints."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, replace
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from answer_stream.agent.suggestions import (
    DeterministicSuggester,
    NextStepSuggester,
    SuggestionService,
)
from answer_stream.config import SessionConfig, SuggestionConfig
from answer_stream.errors import SessionLimitExceeded
from answer_stream.obs.tracing import StreamTraceStore
from answer_stream.session.chat_source import chat_source_factory, offline_source_factory
from answer_stream.session.coordinator import SessionCoordinator, SessionHandle
from answer_stream.session.store import ThreadStore
from answer_stream.types import Answer, Message, Thread, thaw

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


class CreateThreadRequest(BaseModel):
    name: str = Field(min_length=1)
    content_filter: dict[str, Any] | None = None
    shared: bool = False


class AskRequest(BaseModel):
    question: str = Field(min_length=1)
    filters: dict[str, Any] | None = None
    wait: bool = False


app = FastAPI(title="Answer Stream Service", version="0.1.0")

_store = ThreadStore()
_trace_store = StreamTraceStore()
_llm = _create_llm()
_thread_cache: dict[str, dict[str, Any]] = {}


def _invalidate_thread(thread_id: str) -> None:
    _thread_cache.pop(thread_id, None)


_suggestions = SuggestionService(
    store=_store,
    suggester=(
        NextStepSuggester(llm=_llm, config=SuggestionConfig())
        if _llm is not None
        else DeterministicSuggester(SuggestionConfig())
    ),
    cache_invalidators=[_invalidate_thread],
)

_coordinator = SessionCoordinator(
    store=_store,
    source_factory=chat_source_factory(_llm) if _llm is not None else offline_source_factory,
    suggestion_trigger=_suggestions.trigger,
    cache_invalidators=[_invalidate_thread],
    config=SessionConfig(
        inactivity_timeout_seconds=float(os.getenv("ANSWER_STREAM_INACTIVITY_TIMEOUT", "60")),
    ),
    trace_store=_trace_store,
)


def _message_payload(message: Message) -> dict[str, Any]:
    if isinstance(message, Answer):
        metadata = replace(
            message.metadata,
            thread=thaw(message.metadata.thread),
            trace=thaw(message.metadata.trace),
        )
        message = replace(message, metadata=metadata)
    return asdict(message)


def _thread_payload(thread: Thread, *, include_messages: bool) -> dict[str, Any]:
    payload = {
        "id": thread.id,
        "name": thread.name,
        "content_filter": thread.content_filter,
        "shared": thread.shared,
        "created_at": thread.created_at,
        "updated_at": thread.updated_at,
    }
    if include_messages:
        payload["messages"] = [_message_payload(m) for m in _store.messages(thread.id)]
    return payload


def _session_payload(handle: SessionHandle) -> dict[str, Any]:
    return {
        "session_id": handle.id,
        "thread_id": handle.thread_id,
        "question_id": handle.question.id,
        "state": handle.state.value,
        "content": handle.assembler.content,
        "citations": list(handle.assembler.citations),
    }


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "source_mode": "langchain" if _llm is not None else "offline",
        "active_sessions": len(_coordinator.active_handles()),
    }


@app.post("/threads")
def create_thread(request: CreateThreadRequest) -> dict[str, Any]:
    thread = _store.create_thread(
        request.name,
        content_filter=request.content_filter,
        shared=request.shared,
    )
    return _thread_payload(thread, include_messages=False)


@app.get("/threads")
def list_threads(limit: int = 50) -> dict[str, Any]:
    return {
        "items": [
            _thread_payload(thread, include_messages=False)
            for thread in _store.list_threads(limit=limit)
        ]
    }


@app.get("/threads/{thread_id}")
def thread_detail(thread_id: str) -> dict[str, Any]:
    cached = _thread_cache.get(thread_id)
    if cached is not None:
        return cached
    try:
        thread = _store.get_thread(thread_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    payload = _thread_payload(thread, include_messages=True)
    _thread_cache[thread_id] = payload
    return payload


@app.post("/threads/{thread_id}/questions")
async def ask(
    thread_id: str,
    request: AskRequest,
    authorization: str | None = Header(default=None),
) -> dict[str, Any]:
    try:
        handle = _coordinator.start(
            thread_id,
            request.question,
            request.filters,
            auth_token=authorization,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SessionLimitExceeded as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    # The question message is visible immediately.
    _invalidate_thread(thread_id)

    if not request.wait:
        return {
            "session_id": handle.id,
            "question_id": handle.question.id,
            "state": handle.state.value,
        }

    answer = await handle.wait()
    return {
        "session_id": handle.id,
        "question_id": handle.question.id,
        "state": handle.state.value,
        "answer": _message_payload(answer),
    }


@app.get("/sessions/{session_id}")
async def session_detail(session_id: str) -> dict[str, Any]:
    try:
        return _session_payload(_coordinator.get(session_id))
    except KeyError:
        pass
    try:
        record = _trace_store.get(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}") from exc
    return {
        "session_id": record.session_id,
        "thread_id": record.thread_id,
        "answer_id": record.answer_id,
        "state": record.state,
    }


@app.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str) -> dict[str, Any]:
    try:
        handle = _coordinator.get(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not _coordinator.cancel(handle):
        raise HTTPException(status_code=409, detail=f"Session already finished: {session_id}")
    return {"session_id": session_id, "cancel_requested": True}


@app.get("/messages/{message_id}/suggestions")
def suggestions(message_id: str) -> dict[str, Any]:
    try:
        return {"message_id": message_id, "items": _suggestions.get(message_id)}
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{session_id}")
def trace_detail(session_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
