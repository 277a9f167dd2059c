"""Shared domain models."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Literal, Union

from answer_stream.stream.elements import Citation


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def freeze(value: Any) -> Any:
    """Return a read-only deep copy of a JSON-like value."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`, for serialization."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


@dataclass(slots=True, frozen=True)
class ThinkingNode:
    """One step of a finalized thinking trace."""

    id: str
    parent_id: str | None
    label: str
    kind: Literal["branch", "leaf"]
    duration_ms: int | None = None
    children: tuple["ThinkingNode", ...] = ()

    def walk(self) -> list["ThinkingNode"]:
        """Return this node and all descendants in depth-first order."""
        nodes: list[ThinkingNode] = []
        stack = [self]
        while stack:
            node = stack.pop()
            nodes.append(node)
            stack.extend(reversed(node.children))
        return nodes


@dataclass(slots=True, frozen=True)
class AnswerMetadata:
    ran_retrieval: bool = False
    has_citations: bool = False
    error: bool = False
    cancelled: bool = False
    error_message: str | None = None
    warnings: tuple[str, ...] = ()
    thread: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    trace: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(slots=True, frozen=True)
class Question:
    id: str
    thread_id: str
    parent_id: str | None
    content: str
    created_at: datetime = field(default_factory=utc_now)
    role: Literal["question"] = "question"


@dataclass(slots=True, frozen=True)
class Answer:
    """A finalized assistant answer. Never mutated after construction."""

    id: str
    thread_id: str
    parent_id: str | None
    trace_id: str
    content: str
    citations: tuple[Citation, ...]
    next_steps: tuple[str, ...]
    thinking: ThinkingNode | None
    metadata: AnswerMetadata
    created_at: datetime = field(default_factory=utc_now)
    role: Literal["answer"] = "answer"


Message = Union[Question, Answer]


@dataclass(slots=True)
class Thread:
    """A conversation container holding ordered messages."""

    id: str
    name: str
    content_filter: dict[str, Any] | None = None
    shared: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    messages: list[Message] = field(default_factory=list)
