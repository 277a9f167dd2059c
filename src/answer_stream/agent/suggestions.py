"""Next-step suggestions generated after an answer is finalized."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from langchain_core.prompts import ChatPromptTemplate

from answer_stream.config import SuggestionConfig
from answer_stream.session.store import ThreadStore
from answer_stream.types import Answer

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You suggest next steps for a research conversation.

Rules:
1) Propose at most {max_suggestions} follow-up questions, one per line.
2) Every suggestion must be answerable from the cited sources below.
3) Do not number the lines and do not add commentary.
""".strip()

_HUMAN_PROMPT = """
Answer:
{answer}

Cited sources:
{sources}
""".strip()

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


class Suggester(Protocol):
    async def suggest(self, answer: Answer) -> list[str]: ...


class NextStepSuggester:
    """Asks a LangChain chat model for follow-up questions."""

    def __init__(self, *, llm: Any, config: SuggestionConfig | None = None) -> None:
        self.llm = llm
        self.config = config or SuggestionConfig()
        prompt = ChatPromptTemplate.from_messages(
            [("system", _SYSTEM_PROMPT), ("human", _HUMAN_PROMPT)]
        )
        self.chain = prompt | llm

    async def suggest(self, answer: Answer) -> list[str]:
        result = await self.chain.ainvoke(
            {
                "max_suggestions": self.config.max_suggestions,
                "answer": answer.content,
                "sources": _format_sources(answer),
            }
        )
        return _parse_suggestions(
            str(getattr(result, "content", result)), self.config.max_suggestions
        )


class DeterministicSuggester:
    """Builds follow-ups from citation titles when no chat model is configured."""

    def __init__(self, config: SuggestionConfig | None = None) -> None:
        self.config = config or SuggestionConfig()

    async def suggest(self, answer: Answer) -> list[str]:
        suggestions: list[str] = []
        for citation in answer.citations:
            title = citation.title
            if not title:
                continue
            suggestion = f"Tell me more about {title}"
            if suggestion not in suggestions:
                suggestions.append(suggestion)
            if len(suggestions) >= self.config.max_suggestions:
                break
        return suggestions


class SuggestionService:
    """Fire-and-forget suggestion trigger keyed by answer id."""

    def __init__(
        self,
        *,
        store: ThreadStore,
        suggester: Suggester,
        cache_invalidators: Iterable[Callable[[str], Any]] = (),
    ) -> None:
        self.store = store
        self.suggester = suggester
        self.cache_invalidators = list(cache_invalidators)
        self._suggestions: dict[str, list[str]] = {}

    async def trigger(self, message_id: str) -> list[str]:
        answer = self.store.find_answer(message_id)
        steps = await self.suggester.suggest(answer)
        self._suggestions[message_id] = steps
        if steps:
            updated = self.store.attach_next_steps(message_id, steps)
            for invalidate in self.cache_invalidators:
                invalidate(updated.thread_id)
        logger.info("Generated %d next steps for answer %s", len(steps), message_id)
        return steps

    def get(self, message_id: str) -> list[str]:
        steps = self._suggestions.get(message_id)
        if steps is None:
            raise KeyError(f"No suggestions for message: {message_id}")
        return steps


def _format_sources(answer: Answer) -> str:
    lines = []
    for citation in answer.citations:
        lines.append(f"[{citation.ref_id}] ({citation.source_kind}) {citation.title or ''}".rstrip())
    return "\n".join(lines) if lines else "none"


def _parse_suggestions(text: str, limit: int) -> list[str]:
    suggestions: list[str] = []
    for line in text.splitlines():
        cleaned = _BULLET.sub("", line).strip()
        if cleaned and cleaned not in suggestions:
            suggestions.append(cleaned)
    return suggestions[:limit]
