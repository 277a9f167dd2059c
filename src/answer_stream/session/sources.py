"""Element source contract and in-process implementations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from answer_stream.types import Message

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceRequest:
    """Everything a transport needs to open one answer stream."""

    thread_id: str
    question: str
    filters: Any = None
    auth_token: str | None = None
    history: list[Message] = field(default_factory=list)


class ElementSource(Protocol):
    """Ordered async feed of stream elements.

    Exhaustion (``StopAsyncIteration``) means a clean end of stream; any other
    exception raised while iterating is a transport failure.
    """

    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def aclose(self) -> None: ...


ElementSourceFactory = Callable[[SourceRequest], ElementSource]


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_END = object()


class QueueElementSource:
    """Push-based source: a transport callback feeds it, the session drains it."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, element: Any) -> None:
        if self._closed:
            logger.debug("Dropping element pushed after source close")
            return
        self._queue.put_nowait(element)

    def end(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_Failure(exc))

    async def aclose(self) -> None:
        self.end()

    def __aiter__(self) -> "QueueElementSource":
        return self

    async def __anext__(self) -> Any:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._exhausted = True
            raise item.exc
        return item


class IterableElementSource:
    """Replays a fixed element sequence, optionally pacing or failing it."""

    def __init__(
        self,
        elements: Iterable[Any],
        *,
        delay_seconds: float = 0.0,
        fail_with: BaseException | None = None,
    ) -> None:
        self._elements = list(elements)
        self.delay_seconds = delay_seconds
        self.fail_with = fail_with
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._replay()

    async def _replay(self) -> AsyncIterator[Any]:
        for element in self._elements:
            if self.closed:
                return
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield element
        if self.fail_with is not None and not self.closed:
            raise self.fail_with
