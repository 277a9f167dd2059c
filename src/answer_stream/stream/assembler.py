"""Per-stream state machine folding stream elements into one Answer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, assert_never

from answer_stream.config import AssemblerConfig
from answer_stream.errors import MalformedElement, ProtocolViolation
from answer_stream.stream.citations import AddResult, CitationRegistry
from answer_stream.stream.elements import (
    Citation,
    CitationElement,
    EndOfStream,
    ErrorElement,
    ResponseChunk,
    StreamElement,
    ThinkingBranch,
    ThinkingDuration,
    ThinkingLeaf,
    ThreadMetadata,
    TraceMetadata,
    validate_element,
)
from answer_stream.stream.thinking import ThinkingTraceBuilder
from answer_stream.types import Answer, AnswerMetadata, freeze, new_id

logger = logging.getLogger(__name__)

# Wire names seen on metadata patches, folded onto one spelling.
_KEY_ALIASES = {
    "ranRetrieval": "ran_retrieval",
    "hasCitations": "has_citations",
    "traceId": "trace_id",
    "recommendedNextSteps": "next_steps",
    "recommended_next_steps": "next_steps",
    "nextSteps": "next_steps",
}


class AssemblerState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED_SUCCESS = "closed_success"
    CLOSED_ERROR = "closed_error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            AssemblerState.CLOSED_SUCCESS,
            AssemblerState.CLOSED_ERROR,
            AssemblerState.CANCELLED,
        )


@dataclass(slots=True)
class AssemblerStats:
    chunks: int = 0
    citations: int = 0
    duplicate_citations: int = 0
    malformed: int = 0
    thinking_events: int = 0
    duplicate_thinking_nodes: int = 0
    warnings: int = 0


_TRUE_STRINGS = frozenset({"true", "1", "yes"})


def _normalize_patch(patch: dict[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(key, key): value for key, value in patch.items()}


def _as_flag(value: Any) -> bool:
    """Read a wire boolean; strings such as ``"false"`` are parsed, not truth-tested."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, int):
        return value != 0
    return False


class StreamAssembler:
    """Consumes one answer stream in arrival order and finalizes it once.

    The assembler owns its text buffer, citation registry and thinking-trace
    builder exclusively. All element handling is synchronous; callers feed
    elements as they receive them and read :attr:`answer` after a terminal
    transition.
    """

    def __init__(
        self,
        *,
        thread_id: str,
        parent_id: str | None,
        answer_id: str | None = None,
        config: AssemblerConfig | None = None,
    ) -> None:
        self.config = config or AssemblerConfig()
        self.thread_id = thread_id
        self.parent_id = parent_id
        self.answer_id = answer_id or new_id()
        self.stats = AssemblerStats()

        self._state = AssemblerState.OPEN
        self._parts: list[str] = []
        self._length = 0
        self._registry = CitationRegistry()
        self._thinking = ThinkingTraceBuilder(max_nodes=self.config.max_thinking_nodes)
        self._thread_meta: dict[str, Any] = {}
        self._trace_meta: dict[str, Any] = {}
        self._warnings: list[str] = []
        self._error_message: str | None = None
        self._answer: Answer | None = None

    @property
    def state(self) -> AssemblerState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state.terminal

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def citations(self) -> tuple[Citation, ...]:
        return self._registry.snapshot()

    @property
    def answer(self) -> Answer | None:
        return self._answer

    def feed(self, element: StreamElement | Any) -> Answer | None:
        """Process one element. Returns the Answer if it finalized the stream."""
        self._ensure_open("element")
        try:
            element = validate_element(element)
        except MalformedElement as exc:
            self.stats.malformed += 1
            logger.warning("Skipping malformed element on answer %s: %s", self.answer_id, exc)
            return None

        match element:
            case ResponseChunk(text=text):
                self._parts.append(text)
                self._length += len(text)
                self.stats.chunks += 1
            case CitationElement(citation=citation):
                anchored = citation.model_copy(update={"offset": self._length})
                if self._registry.add(anchored) is AddResult.ACCEPTED:
                    self.stats.citations += 1
                else:
                    self.stats.duplicate_citations += 1
            case ThinkingBranch() | ThinkingLeaf() | ThinkingDuration():
                self._thinking.ingest(element)
                self.stats.thinking_events += 1
                self.stats.duplicate_thinking_nodes = self._thinking.duplicates
            case ThreadMetadata(patch=patch):
                self._thread_meta.update(_normalize_patch(patch))
            case TraceMetadata(patch=patch):
                self._trace_meta.update(_normalize_patch(patch))
            case ErrorElement(message=message, fatal=True):
                return self._fail(message)
            case ErrorElement(message=message):
                self._warnings.append(message)
                self.stats.warnings += 1
                logger.info("Non-fatal stream warning on answer %s: %s", self.answer_id, message)
            case EndOfStream():
                return self._finalize(AssemblerState.CLOSED_SUCCESS)
            case _:
                assert_never(element)
        return None

    def complete(self) -> Answer:
        """Finalize successfully because the source was exhausted."""
        self._ensure_open("end of stream")
        return self._finalize(AssemblerState.CLOSED_SUCCESS)

    def fail(self, message: str) -> Answer:
        """Finalize as an error, e.g. after a transport failure or timeout."""
        self._ensure_open("failure")
        return self._fail(message)

    def cancel(self) -> Answer:
        self._ensure_open("cancellation")
        logger.info("Answer %s cancelled after %d chunks", self.answer_id, self.stats.chunks)
        return self._finalize(AssemblerState.CANCELLED)

    def _fail(self, message: str) -> Answer:
        self._error_message = message
        logger.warning("Fatal stream error on answer %s: %s", self.answer_id, message)
        return self._finalize(AssemblerState.CLOSED_ERROR)

    def _ensure_open(self, what: str) -> None:
        if self._state is not AssemblerState.OPEN:
            raise ProtocolViolation(
                f"{what} received for answer {self.answer_id} in state {self._state.value}"
            )

    def _finalize(self, terminal: AssemblerState) -> Answer:
        if terminal is AssemblerState.CLOSED_SUCCESS:
            self._state = AssemblerState.CLOSING

        try:
            answer = self._build_answer(terminal)
        except Exception as exc:
            logger.exception("Finalizing answer %s failed", self.answer_id)
            terminal = AssemblerState.CLOSED_ERROR
            self._error_message = f"internal error: {exc}"
            answer = Answer(
                id=self.answer_id,
                thread_id=self.thread_id,
                parent_id=self.parent_id,
                trace_id=new_id(),
                content=self.content,
                citations=self._registry.snapshot(),
                next_steps=(),
                thinking=None,
                metadata=AnswerMetadata(
                    error=True,
                    error_message=self._error_message,
                    warnings=tuple(self._warnings),
                ),
            )

        self._answer = answer
        self._state = terminal
        logger.debug(
            "Answer %s finalized as %s (%d chars, %d citations)",
            self.answer_id,
            terminal.value,
            self._length,
            len(answer.citations),
        )
        return answer

    def _build_answer(self, terminal: AssemblerState) -> Answer:
        citations = self._registry.snapshot()
        thinking = self._thinking.finalize()
        thread_meta = freeze(self._thread_meta)
        trace_meta = freeze(self._trace_meta)
        return Answer(
            id=self.answer_id,
            thread_id=self.thread_id,
            parent_id=self.parent_id,
            trace_id=str(trace_meta.get("trace_id") or new_id()),
            content=self.content,
            citations=citations,
            next_steps=self._next_steps(self._thread_meta.get("next_steps")),
            thinking=thinking,
            metadata=AnswerMetadata(
                ran_retrieval=_as_flag(thread_meta.get("ran_retrieval")),
                has_citations=_as_flag(thread_meta.get("has_citations")) or bool(citations),
                error=terminal is AssemblerState.CLOSED_ERROR,
                cancelled=terminal is AssemblerState.CANCELLED,
                error_message=self._error_message,
                warnings=tuple(self._warnings),
                thread=thread_meta,
                trace=trace_meta,
            ),
        )

    def _next_steps(self, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,) if value.strip() else ()
        if isinstance(value, (list, tuple)):
            return tuple(str(step) for step in value if step is not None)
        logger.warning(
            "Ignoring next steps of type %s on answer %s", type(value).__name__, self.answer_id
        )
        return ()
