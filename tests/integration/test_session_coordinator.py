import asyncio

import pytest

from answer_stream.config import SessionConfig
from answer_stream.errors import SessionLimitExceeded
from answer_stream.obs.tracing import StreamTraceStore
from answer_stream.session.coordinator import SessionCoordinator, should_request_suggestions
from answer_stream.session.sources import IterableElementSource, QueueElementSource, SourceRequest
from answer_stream.session.store import ThreadStore
from answer_stream.stream.elements import (
    CitationElement,
    EndOfStream,
    ResponseChunk,
    ThreadMetadata,
)
from answer_stream.types import Answer, Question


def _cited_stream(text: str = "Prices fell.") -> list[object]:
    return [
        ThreadMetadata(patch={"ranRetrieval": True}),
        ResponseChunk(text=text),
        CitationElement(citation={"ref_id": "c1", "web_page": {"url": "https://example.com/cpi"}}),
        EndOfStream(),
    ]


class _Harness:
    """Coordinator wired to recording collaborators."""

    def __init__(self, sources: list[object], **config: object) -> None:
        self.store = ThreadStore()
        self.thread = self.store.create_thread("Markets")
        self.requests: list[SourceRequest] = []
        self.triggered: list[tuple[str, bool]] = []
        self.invalidated: list[str] = []
        self.trace_store = StreamTraceStore()
        self._sources = list(sources)
        self.coordinator = SessionCoordinator(
            store=self.store,
            source_factory=self._open,
            suggestion_trigger=self._trigger,
            cache_invalidators=[self.invalidated.append],
            config=SessionConfig(**config),
            trace_store=self.trace_store,
        )

    def _open(self, request: SourceRequest):
        self.requests.append(request)
        return self._sources.pop(0)

    def _trigger(self, message_id: str) -> None:
        stored = any(m.id == message_id for m in self.store.messages(self.thread.id))
        self.triggered.append((message_id, stored))


def test_successful_stream_persists_and_triggers_suggestions_once() -> None:
    async def scenario():
        harness = _Harness([IterableElementSource(_cited_stream())])
        completed: list[Answer] = []
        handle = harness.coordinator.start(
            harness.thread.id,
            "What happened to prices?",
            {"region": "eu"},
            auth_token="Bearer t",
            on_complete=completed.append,
        )
        answer = await handle.wait()
        await asyncio.sleep(0)
        return harness, handle, answer, completed

    harness, handle, answer, completed = asyncio.run(scenario())

    assert answer.content == "Prices fell."
    assert completed == [answer]
    assert harness.triggered == [(answer.id, True)]
    assert harness.invalidated == [harness.thread.id]
    assert harness.requests[0].filters == {"region": "eu"}
    assert harness.requests[0].auth_token == "Bearer t"

    messages = harness.store.messages(harness.thread.id)
    assert isinstance(messages[0], Question)
    assert messages[1] is answer
    assert answer.parent_id == messages[0].id
    assert harness.coordinator.active_handles() == []
    assert harness.trace_store.get(handle.id).state == "closed_success"


def test_follow_up_question_is_parented_to_previous_answer() -> None:
    async def scenario():
        harness = _Harness(
            [IterableElementSource(_cited_stream()), IterableElementSource(_cited_stream("More."))]
        )
        first = await harness.coordinator.start(harness.thread.id, "First?").wait()
        second_handle = harness.coordinator.start(harness.thread.id, "Second?")
        await second_handle.wait()
        return harness, first, second_handle

    harness, first, second_handle = asyncio.run(scenario())

    assert second_handle.question.parent_id == first.id
    assert harness.requests[1].history[-1].id == first.id


def test_no_suggestions_without_retrieval() -> None:
    async def scenario():
        harness = _Harness([IterableElementSource([ResponseChunk(text="Hi"), EndOfStream()])])
        answer = await harness.coordinator.start(harness.thread.id, "Hello?").wait()
        return harness, answer

    harness, answer = asyncio.run(scenario())

    assert should_request_suggestions(answer) is False
    assert harness.triggered == []
    assert harness.invalidated == [harness.thread.id]


def test_transport_failure_finalizes_partial_answer_as_error() -> None:
    async def scenario():
        source = IterableElementSource(
            [ThreadMetadata(patch={"ran_retrieval": True}), ResponseChunk(text="Half an")],
            fail_with=ConnectionError("connection dropped"),
        )
        harness = _Harness([source])
        answer = await harness.coordinator.start(harness.thread.id, "Q?").wait()
        return harness, answer

    harness, answer = asyncio.run(scenario())

    assert answer.content == "Half an"
    assert answer.metadata.error is True
    assert "connection dropped" in answer.metadata.error_message
    assert harness.triggered == []


def test_inactivity_timeout_is_a_fatal_error() -> None:
    async def scenario():
        source = QueueElementSource()
        harness = _Harness([source], inactivity_timeout_seconds=0.05)
        handle = harness.coordinator.start(harness.thread.id, "Anyone there?")
        source.push(ResponseChunk(text="Thinking"))
        answer = await handle.wait()
        return source, answer

    source, answer = asyncio.run(scenario())

    assert answer.content == "Thinking"
    assert answer.metadata.error is True
    assert "no stream element received" in answer.metadata.error_message
    assert source.closed is True


def test_source_exhaustion_without_end_element_completes() -> None:
    async def scenario():
        harness = _Harness([IterableElementSource([ResponseChunk(text="No end marker")])])
        return await harness.coordinator.start(harness.thread.id, "Q?").wait()

    answer = asyncio.run(scenario())

    assert answer.content == "No end marker"
    assert answer.metadata.error is False


def test_cancel_closes_source_and_reports_finished_sessions() -> None:
    async def scenario():
        source = QueueElementSource()
        harness = _Harness([source])
        handle = harness.coordinator.start(harness.thread.id, "Long question")
        source.push(ResponseChunk(text="Start"))
        while not handle.assembler.stats.chunks:
            await asyncio.sleep(0.001)
        assert harness.coordinator.cancel(handle.id) is True
        answer = await harness.coordinator.wait(handle)
        return harness, handle, source, answer

    harness, handle, source, answer = asyncio.run(scenario())

    assert answer.metadata.cancelled is True
    assert answer.content == "Start"
    assert source.closed is True
    assert harness.coordinator.cancel(handle) is False
    assert harness.invalidated == [harness.thread.id]
    assert harness.trace_store.get(handle.id).state == "cancelled"


def test_completion_callback_is_single_and_late_attach_fires() -> None:
    async def scenario():
        harness = _Harness([IterableElementSource(_cited_stream())])
        handle = harness.coordinator.start(harness.thread.id, "Q?")
        await handle.wait()
        received: list[Answer] = []
        handle.on_complete(received.append)
        with pytest.raises(ValueError):
            handle.on_complete(received.append)
        return handle, received

    handle, received = asyncio.run(scenario())

    assert received == [handle.answer]


def test_side_effect_failures_do_not_affect_answer() -> None:
    async def scenario():
        store = ThreadStore()
        thread = store.create_thread("Markets")

        def _broken(_: str) -> None:
            raise RuntimeError("collaborator down")

        async def _broken_async(_: str) -> None:
            raise RuntimeError("suggestions down")

        coordinator = SessionCoordinator(
            store=store,
            source_factory=lambda request: IterableElementSource(_cited_stream()),
            suggestion_trigger=_broken_async,
            cache_invalidators=[_broken],
        )
        handle = coordinator.start(thread.id, "Q?", on_complete=_broken)
        answer = await handle.wait()
        await coordinator.aclose()
        return store, thread, answer

    store, thread, answer = asyncio.run(scenario())

    assert answer.content == "Prices fell."
    assert store.messages(thread.id)[-1] is answer


def test_concurrent_streams_on_one_thread_are_independent() -> None:
    async def scenario():
        first, second = QueueElementSource(), QueueElementSource()
        harness = _Harness([first, second])
        h1 = harness.coordinator.start(harness.thread.id, "One?")
        h2 = harness.coordinator.start(harness.thread.id, "Two?")
        second.push(ResponseChunk(text="two"))
        first.push(ResponseChunk(text="one"))
        second.end()
        first.end()
        return harness, await h1.wait(), await h2.wait()

    harness, a1, a2 = asyncio.run(scenario())

    assert a1.content == "one"
    assert a2.content == "two"
    answers = [m for m in harness.store.messages(harness.thread.id) if isinstance(m, Answer)]
    assert {a.id for a in answers} == {a1.id, a2.id}


def test_start_rejects_unknown_thread_and_capacity() -> None:
    async def scenario() -> None:
        harness = _Harness([QueueElementSource()], max_active_sessions=1)
        with pytest.raises(KeyError):
            harness.coordinator.start("missing", "Q?")
        with pytest.raises(ValueError):
            harness.coordinator.start(harness.thread.id, "   ")
        harness.coordinator.start(harness.thread.id, "Q?")
        with pytest.raises(SessionLimitExceeded):
            harness.coordinator.start(harness.thread.id, "Another?")
        await harness.coordinator.aclose()
        assert harness.coordinator.active_handles() == []

    asyncio.run(scenario())


def test_malformed_next_steps_patch_still_resolves_session() -> None:
    async def scenario():
        source = IterableElementSource(
            [
                ResponseChunk(text="Partial"),
                ThreadMetadata(patch={"recommendedNextSteps": 5}),
                EndOfStream(),
            ]
        )
        harness = _Harness([source])
        handle = harness.coordinator.start(harness.thread.id, "Q?")
        answer = await asyncio.wait_for(handle.wait(), timeout=1)
        return harness, answer

    harness, answer = asyncio.run(scenario())

    assert answer.content == "Partial"
    assert answer.next_steps == ()
    assert answer.metadata.error is False
    assert harness.coordinator.active_handles() == []
    assert harness.invalidated == [harness.thread.id]
    assert harness.store.messages(harness.thread.id)[-1] is answer


def test_source_factory_failure_finalizes_as_transport_error() -> None:
    async def scenario():
        store = ThreadStore()
        thread = store.create_thread("Markets")
        invalidated: list[str] = []
        completed: list[Answer] = []

        def _refuse(request: SourceRequest):
            raise ConnectionError("refused")

        coordinator = SessionCoordinator(
            store=store,
            source_factory=_refuse,
            cache_invalidators=[invalidated.append],
        )
        handle = coordinator.start(thread.id, "Q?", on_complete=completed.append)
        return store, thread, coordinator, handle, invalidated, completed

    store, thread, coordinator, handle, invalidated, completed = asyncio.run(scenario())

    assert handle.done is True
    answer = handle.answer
    assert answer is not None
    assert answer.metadata.error is True
    assert answer.metadata.error_message == "transport failure: refused"
    assert answer.parent_id == handle.question.id
    assert completed == [answer]
    assert invalidated == [thread.id]
    assert [type(m).__name__ for m in store.messages(thread.id)] == ["Question", "Answer"]
    assert coordinator.active_handles() == []


class _GeneratorSource:
    """Async-generator source that stalls after its first chunk."""

    def __init__(self) -> None:
        self._generator = self._produce()
        self.closed = False

    async def _produce(self):
        yield ResponseChunk(text="Start")
        await asyncio.Event().wait()

    def __aiter__(self):
        return self._generator

    async def aclose(self) -> None:
        await self._generator.aclose()
        self.closed = True


def test_task_cancellation_abandons_pending_receive_before_closing() -> None:
    async def scenario():
        source = _GeneratorSource()
        harness = _Harness([source])
        handle = harness.coordinator.start(harness.thread.id, "Long question")
        while not handle.assembler.stats.chunks:
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)
        handle.task.cancel()
        answer = await handle.wait()
        await asyncio.gather(handle.task, return_exceptions=True)
        return source, answer

    source, answer = asyncio.run(scenario())

    assert answer.metadata.cancelled is True
    assert answer.content == "Start"
    assert source.closed is True
