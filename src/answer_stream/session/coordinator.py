"""Session coordinator: one assembler per open (thread, question) stream."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from answer_stream.config import SessionConfig
from answer_stream.errors import SessionLimitExceeded
from answer_stream.obs.tracing import StreamTraceStore, Timer
from answer_stream.session.sources import (
    ElementSource,
    ElementSourceFactory,
    IterableElementSource,
    SourceRequest,
)
from answer_stream.session.store import ThreadStore
from answer_stream.stream.assembler import AssemblerState, StreamAssembler
from answer_stream.types import Answer, Question, new_id

logger = logging.getLogger(__name__)

SuggestionTrigger = Callable[[str], Awaitable[Any] | Any]
CacheInvalidator = Callable[[str], Any]
CompletionCallback = Callable[[Answer], Any]

_SOURCE_EXHAUSTED = object()


def should_request_suggestions(answer: Answer) -> bool:
    """Decide from the finalized answer alone whether to ask for next steps."""
    meta = answer.metadata
    if meta.error or meta.cancelled:
        return False
    return meta.ran_retrieval and len(answer.citations) > 0


async def _next_element(iterator: Any) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _SOURCE_EXHAUSTED


class SessionHandle:
    """Caller-facing reference to one running answer stream."""

    def __init__(
        self,
        *,
        question: Question,
        assembler: StreamAssembler,
        source: ElementSource,
        spawn: Callable[[Awaitable[Any]], None],
    ) -> None:
        self.id = new_id()
        self.question = question
        self.assembler = assembler
        self.source = source
        self.task: asyncio.Task[None] | None = None
        self.first_chunk_ms: float | None = None
        self._spawn = spawn
        self._cancel_requested = asyncio.Event()
        self._result: asyncio.Future[Answer] = asyncio.get_running_loop().create_future()
        self._callback: CompletionCallback | None = None
        self._callback_fired = False

    @property
    def thread_id(self) -> str:
        return self.question.thread_id

    @property
    def state(self) -> AssemblerState:
        return self.assembler.state

    @property
    def done(self) -> bool:
        return self._result.done()

    @property
    def answer(self) -> Answer | None:
        return self._result.result() if self._result.done() else None

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def on_complete(self, callback: CompletionCallback) -> None:
        """Attach the completion callback; runs immediately if already finished."""
        if self._callback is not None:
            raise ValueError(f"Session {self.id} already has a completion callback")
        self._callback = callback
        if self.done:
            self._fire_callback()

    async def wait(self) -> Answer:
        return await asyncio.shield(self._result)

    def _resolve(self, answer: Answer) -> None:
        self._result.set_result(answer)
        self._fire_callback()

    def _fire_callback(self) -> None:
        if self._callback is None or self._callback_fired:
            return
        self._callback_fired = True
        answer = self._result.result()
        try:
            result = self._callback(answer)
        except Exception:
            logger.exception("Completion callback failed for answer %s", answer.id)
            return
        if inspect.isawaitable(result):
            self._spawn(result)


class SessionCoordinator:
    """Owns every open stream and its side effects after finalization.

    Each call to :meth:`start` persists a question, opens an element source
    and pulls it on its own asyncio task. Transport failures and inactivity
    timeouts are turned into fatal errors on the assembler, so every stream
    ends through the assembler's finalization path.
    """

    def __init__(
        self,
        *,
        store: ThreadStore,
        source_factory: ElementSourceFactory,
        suggestion_trigger: SuggestionTrigger | None = None,
        cache_invalidators: Iterable[CacheInvalidator] = (),
        config: SessionConfig | None = None,
        trace_store: StreamTraceStore | None = None,
    ) -> None:
        self.store = store
        self.source_factory = source_factory
        self.suggestion_trigger = suggestion_trigger
        self.cache_invalidators = list(cache_invalidators)
        self.config = config or SessionConfig()
        self.trace_store = trace_store
        self._sessions: dict[str, SessionHandle] = {}
        self._background: set[asyncio.Future[Any]] = set()

    def start(
        self,
        thread_id: str,
        question_text: str,
        filters: Any = None,
        *,
        auth_token: str | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> SessionHandle:
        """Open a stream answering ``question_text`` on ``thread_id``.

        Must be called from a running event loop. Raises ``KeyError`` for an
        unknown thread and :class:`SessionLimitExceeded` when the coordinator
        is at capacity.
        """
        if not question_text.strip():
            raise ValueError("question_text must not be empty")
        if len(self._sessions) >= self.config.max_active_sessions:
            raise SessionLimitExceeded(
                f"{len(self._sessions)} streams already open (limit {self.config.max_active_sessions})"
            )

        history = self.store.messages(thread_id)
        question = Question(
            id=new_id(),
            thread_id=thread_id,
            parent_id=history[-1].id if history else None,
            content=question_text,
        )
        self.store.append_message(question)

        assembler = StreamAssembler(
            thread_id=thread_id,
            parent_id=question.id,
            config=self.config.assembler,
        )
        request = SourceRequest(
            thread_id=thread_id,
            question=question_text,
            filters=filters,
            auth_token=auth_token,
            history=history,
        )
        try:
            source = self.source_factory(request)
        except Exception as exc:
            logger.warning("Opening source for thread %s failed: %s", thread_id, exc)
            handle = SessionHandle(
                question=question,
                assembler=assembler,
                source=IterableElementSource(()),
                spawn=self._spawn,
            )
            if on_complete is not None:
                handle.on_complete(on_complete)
            assembler.fail(f"transport failure: {exc}")
            self._finish(handle, 0.0)
            return handle

        handle = SessionHandle(
            question=question,
            assembler=assembler,
            source=source,
            spawn=self._spawn,
        )
        if on_complete is not None:
            handle.on_complete(on_complete)

        self._sessions[handle.id] = handle
        handle.task = asyncio.create_task(self._run(handle), name=f"answer-stream-{handle.id}")
        logger.info("Started session %s on thread %s", handle.id, thread_id)
        return handle

    def cancel(self, handle: SessionHandle | str) -> bool:
        """Request cancellation. Returns False if the stream already finished."""
        if isinstance(handle, str):
            handle = self.get(handle)
        if handle.done:
            logger.warning("Cancel requested for finished session %s", handle.id)
            return False
        handle._cancel_requested.set()
        return True

    async def wait(self, handle: SessionHandle | str) -> Answer:
        if isinstance(handle, str):
            handle = self.get(handle)
        return await handle.wait()

    def get(self, session_id: str) -> SessionHandle:
        handle = self._sessions.get(session_id)
        if handle is None:
            raise KeyError(f"Session not found: {session_id}")
        return handle

    def active_handles(self) -> list[SessionHandle]:
        return list(self._sessions.values())

    async def aclose(self) -> None:
        """Cancel every open stream and wait for pending side effects."""
        handles = self.active_handles()
        for handle in handles:
            self.cancel(handle)
        tasks = [handle.task for handle in handles if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run(self, handle: SessionHandle) -> None:
        assembler = handle.assembler
        timeout = self.config.inactivity_timeout_seconds
        iterator = aiter(handle.source)
        cancel_wait = asyncio.ensure_future(handle._cancel_requested.wait())
        receive: asyncio.Future[Any] | None = None
        with Timer() as timer:
            try:
                while not assembler.closed:
                    receive = asyncio.ensure_future(_next_element(iterator))
                    done, _ = await asyncio.wait(
                        {receive, cancel_wait},
                        timeout=timeout,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if cancel_wait in done:
                        await self._abandon(receive)
                        assembler.cancel()
                        break
                    if receive not in done:
                        await self._abandon(receive)
                        logger.warning("Session %s idle for %.1fs", handle.id, timeout)
                        assembler.fail(f"no stream element received within {timeout:g}s")
                        break
                    try:
                        element = receive.result()
                    except Exception as exc:
                        logger.warning("Transport failure on session %s: %s", handle.id, exc)
                        assembler.fail(f"transport failure: {exc}")
                        break
                    if element is _SOURCE_EXHAUSTED:
                        assembler.complete()
                        break
                    assembler.feed(element)
                    if handle.first_chunk_ms is None and assembler.stats.chunks:
                        handle.first_chunk_ms = timer.running_ms
            except asyncio.CancelledError:
                if receive is not None:
                    await self._abandon(receive)
                if assembler.state is AssemblerState.OPEN:
                    assembler.cancel()
                raise
            except Exception as exc:
                logger.exception("Session %s aborted", handle.id)
                if assembler.state is AssemblerState.OPEN:
                    assembler.fail(f"internal error: {exc}")
            finally:
                cancel_wait.cancel()
                await self._close_source(handle)
                self._finish(handle, timer.running_ms)

    @staticmethod
    async def _abandon(receive: asyncio.Future[Any]) -> None:
        receive.cancel()
        await asyncio.gather(receive, return_exceptions=True)

    @staticmethod
    async def _close_source(handle: SessionHandle) -> None:
        try:
            await handle.source.aclose()
        except Exception:
            logger.exception("Closing source for session %s failed", handle.id)

    def _finish(self, handle: SessionHandle, latency_ms: float) -> None:
        self._sessions.pop(handle.id, None)
        answer = handle.assembler.answer
        if answer is None:
            logger.error("Session %s ended without an answer", handle.id)
            return
        self.store.append_message(answer)

        for invalidate in self.cache_invalidators:
            try:
                result = invalidate(answer.thread_id)
            except Exception:
                logger.exception("Cache invalidation failed for thread %s", answer.thread_id)
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

        if self.trace_store is not None:
            self.trace_store.create_record(
                session_id=handle.id,
                question=handle.question.content,
                answer=answer,
                state=handle.assembler.state.value,
                stats=handle.assembler.stats,
                latency_ms=latency_ms,
                first_chunk_ms=handle.first_chunk_ms,
            )

        handle._resolve(answer)
        logger.info(
            "Session %s finished as %s (%d chars, %d citations)",
            handle.id,
            handle.assembler.state.value,
            len(answer.content),
            len(answer.citations),
        )

        if should_request_suggestions(answer):
            self._trigger_suggestions(answer)

    def _trigger_suggestions(self, answer: Answer) -> None:
        if self.suggestion_trigger is None:
            return
        try:
            result = self.suggestion_trigger(answer.id)
        except Exception:
            logger.exception("Suggestion trigger failed for answer %s", answer.id)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background side effect failed", exc_info=exc)
