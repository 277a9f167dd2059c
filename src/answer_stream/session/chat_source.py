"""Element sources backed by a LangChain chat model."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from answer_stream.session.sources import (
    ElementSourceFactory,
    IterableElementSource,
    SourceRequest,
)
from answer_stream.stream.elements import (
    EndOfStream,
    ResponseChunk,
    ThreadMetadata,
    TraceMetadata,
)
from answer_stream.types import Answer, Message, Question, new_id

_SYSTEM_PROMPT = """
You are a research assistant answering questions inside a conversation thread.

Rules:
1) Answer the latest question using the conversation so far.
2) Respect the content filter when it is provided: {filters}
3) If you are not sure, say so plainly instead of guessing.
""".strip()

_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", _SYSTEM_PROMPT),
        MessagesPlaceholder(variable_name="history", optional=True),
        ("human", "{question}"),
    ]
)


def _history_messages(history: list[Message]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for message in history:
        if isinstance(message, Question):
            messages.append(HumanMessage(content=message.content))
        elif isinstance(message, Answer) and message.content:
            messages.append(AIMessage(content=message.content))
    return messages


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


class ChatModelElementSource:
    """Streams a chat model's answer as response chunks framed by metadata.

    The model is any LangChain chat model supporting ``astream``. The filter
    object is rendered into the system prompt and otherwise left untouched.
    """

    def __init__(self, llm: Any, request: SourceRequest, *, model_name: str | None = None) -> None:
        self.llm = llm
        self.request = request
        self.model_name = model_name or getattr(llm, "model_name", None) or type(llm).__name__
        self._closed = False
        self._iterator: AsyncIterator[Any] | None = None

    async def aclose(self) -> None:
        self._closed = True
        if self._iterator is not None:
            await self._iterator.aclose()  # type: ignore[attr-defined]

    def __aiter__(self) -> AsyncIterator[Any]:
        self._iterator = self._generate()
        return self._iterator

    async def _generate(self) -> AsyncIterator[Any]:
        messages = _PROMPT.format_messages(
            history=_history_messages(self.request.history),
            question=self.request.question,
            filters=json.dumps(self.request.filters, default=str) if self.request.filters else "none",
        )
        yield TraceMetadata(patch={"trace_id": new_id(), "model": self.model_name})
        yield ThreadMetadata(patch={"ran_retrieval": False})

        async for chunk in self.llm.astream(messages):
            if self._closed:
                return
            text = _chunk_text(getattr(chunk, "content", chunk))
            if text:
                yield ResponseChunk(text=text)
        yield EndOfStream()


def chat_source_factory(llm: Any, *, model_name: str | None = None) -> ElementSourceFactory:
    def _factory(request: SourceRequest) -> ChatModelElementSource:
        return ChatModelElementSource(llm, request, model_name=model_name)

    return _factory


def offline_source_factory(request: SourceRequest) -> IterableElementSource:
    """Deterministic source used when no chat model is configured."""
    text = f"No language model is configured, so this question cannot be answered yet: {request.question}"
    words = re.findall(r"\S+\s*", text)
    elements: list[Any] = [
        TraceMetadata(patch={"model": "offline"}),
        ThreadMetadata(patch={"ran_retrieval": False}),
    ]
    elements.extend(ResponseChunk(text=word) for word in words)
    elements.append(EndOfStream())
    return IterableElementSource(elements)
