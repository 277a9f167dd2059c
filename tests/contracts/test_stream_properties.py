import asyncio
import itertools
import random

import pytest

from answer_stream.errors import ProtocolViolation
from answer_stream.session.coordinator import SessionCoordinator
from answer_stream.session.sources import QueueElementSource
from answer_stream.session.store import ThreadStore
from answer_stream.stream.assembler import StreamAssembler
from answer_stream.stream.citations import CitationRegistry
from answer_stream.stream.elements import (
    Citation,
    CitationElement,
    EndOfStream,
    ErrorElement,
    ResponseChunk,
    ThinkingBranch,
    ThinkingDuration,
    ThinkingLeaf,
    ThreadMetadata,
)
from answer_stream.stream.thinking import ThinkingTraceBuilder

_ARTICLE = {"article_id": "X", "title": "Sky colour explained"}


def _assembler() -> StreamAssembler:
    return StreamAssembler(thread_id="t1", parent_id="q1")


def test_content_is_ordered_concatenation_of_chunks() -> None:
    texts = ["alpha ", "beta ", "gamma"]
    for ordering in itertools.permutations(texts):
        assembler = _assembler()
        for text in ordering:
            assembler.feed(ResponseChunk(text=text))
        assert assembler.complete().content == "".join(ordering)


def test_adding_same_citation_twice_keeps_one() -> None:
    registry = CitationRegistry()
    citation = Citation(ref_id="c1", article=_ARTICLE)

    registry.add(citation)
    before = registry.snapshot()
    registry.add(citation)

    assert len(registry) == 1
    assert registry.snapshot() == before


def test_any_thinking_interleaving_yields_one_acyclic_tree() -> None:
    events = [
        ThinkingBranch(node_id="1"),
        ThinkingBranch(node_id="2", parent_id="1"),
        ThinkingLeaf(node_id="3", parent_id="2"),
        ThinkingLeaf(node_id="4", parent_id="1"),
        ThinkingDuration(node_id="3", millis=7),
        ThinkingDuration(node_id="9", millis=3),
        ThinkingLeaf(node_id="2", parent_id="4"),
        ThinkingBranch(node_id="5", parent_id="5"),
    ]
    rng = random.Random(1234)
    for _ in range(200):
        shuffled = events[:]
        rng.shuffle(shuffled)
        builder = ThinkingTraceBuilder()
        for event in shuffled:
            builder.ingest(event)

        root = builder.finalize()

        assert root is not None
        ids = [node.id for node in root.walk()]
        assert len(ids) == len(set(ids))
        assert {"1", "2", "3", "4", "5"} <= set(ids)
        assert "9" not in ids


def test_second_terminal_element_does_not_touch_answer() -> None:
    assembler = _assembler()
    assembler.feed(ResponseChunk(text="final"))
    answer = assembler.feed(EndOfStream())

    with pytest.raises(ProtocolViolation, match="closed_success"):
        assembler.feed(EndOfStream())

    assert assembler.answer is answer
    assert answer.content == "final"


def test_cancel_preserves_exactly_the_processed_prefix() -> None:
    async def scenario():
        store = ThreadStore()
        thread = store.create_thread("sky")
        source = QueueElementSource()
        triggered: list[str] = []
        coordinator = SessionCoordinator(
            store=store,
            source_factory=lambda request: source,
            suggestion_trigger=triggered.append,
        )
        handle = coordinator.start(thread.id, "Why is the sky blue?")

        source.push(ThreadMetadata(patch={"ran_retrieval": True}))
        source.push(ResponseChunk(text="Rayleigh "))
        source.push(CitationElement(citation={"ref_id": "c1", "article": _ARTICLE}))
        source.push(ResponseChunk(text="scattering"))
        while handle.assembler.stats.chunks < 2:
            await asyncio.sleep(0.001)

        coordinator.cancel(handle)
        answer = await handle.wait()
        return answer, triggered

    answer, triggered = asyncio.run(scenario())

    assert answer.content == "Rayleigh scattering"
    assert [c.ref_id for c in answer.citations] == ["c1"]
    assert answer.metadata.cancelled is True
    assert triggered == []


def test_chunks_then_citation_close_successfully() -> None:
    assembler = _assembler()
    assembler.feed(ResponseChunk(text="The sky is"))
    assembler.feed(ResponseChunk(text=" blue."))
    assembler.feed(CitationElement(citation={"ref_id": "c1", "article": _ARTICLE}))

    answer = assembler.complete()

    assert answer.content == "The sky is blue."
    assert [c.ref_id for c in answer.citations] == ["c1"]
    assert answer.metadata.error is False


def test_fatal_error_keeps_partial_and_skips_suggestions() -> None:
    async def scenario():
        store = ThreadStore()
        thread = store.create_thread("sky")
        source = QueueElementSource()
        triggered: list[str] = []
        coordinator = SessionCoordinator(
            store=store,
            source_factory=lambda request: source,
            suggestion_trigger=triggered.append,
        )
        handle = coordinator.start(thread.id, "Why?")
        source.push(ThreadMetadata(patch={"ran_retrieval": True}))
        source.push(ResponseChunk(text="Partial"))
        source.push(ErrorElement(message="upstream timeout", fatal=True))
        return await handle.wait(), triggered

    answer, triggered = asyncio.run(scenario())

    assert answer.content == "Partial"
    assert answer.metadata.error is True
    assert answer.metadata.error_message == "upstream timeout"
    assert triggered == []


def test_duration_arriving_before_leaf_is_attached() -> None:
    assembler = _assembler()
    assembler.feed({"type": "thinking_branch", "node_id": 1, "parent_id": None})
    assembler.feed({"type": "thinking_duration", "node_id": 2, "millis": 50})
    assembler.feed({"type": "thinking_leaf", "node_id": 2, "parent_id": 1})

    root = assembler.complete().thinking

    assert root is not None
    assert root.id == "1"
    assert len(root.children) == 1
    assert root.children[0].id == "2"
    assert root.children[0].duration_ms == 50
