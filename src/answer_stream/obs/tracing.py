"""Per-stream trace records and aggregate stream metrics."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from answer_stream.stream.assembler import AssemblerStats
from answer_stream.types import Answer

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class StreamTraceRecord:
    session_id: str
    trace_id: str
    thread_id: str
    answer_id: str
    timestamp_utc: str
    question: str
    state: str
    chunk_count: int
    citation_count: int
    duplicate_citations: int
    malformed_elements: int
    thinking_events: int
    duplicate_thinking_nodes: int
    warnings: int
    input_tokens: int
    output_tokens: int
    latency_ms: float
    first_chunk_ms: float | None


class StreamTraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self.max_records = max_records
        self._records: dict[str, StreamTraceRecord] = {}

    def create_record(
        self,
        *,
        session_id: str,
        question: str,
        answer: Answer,
        state: str,
        stats: AssemblerStats,
        latency_ms: float,
        first_chunk_ms: float | None = None,
    ) -> StreamTraceRecord:
        record = StreamTraceRecord(
            session_id=session_id,
            trace_id=answer.trace_id,
            thread_id=answer.thread_id,
            answer_id=answer.id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            state=state,
            chunk_count=stats.chunks,
            citation_count=len(answer.citations),
            duplicate_citations=stats.duplicate_citations,
            malformed_elements=stats.malformed,
            thinking_events=stats.thinking_events,
            duplicate_thinking_nodes=stats.duplicate_thinking_nodes,
            warnings=stats.warnings,
            input_tokens=estimate_token_count(question),
            output_tokens=estimate_token_count(answer.content),
            latency_ms=latency_ms,
            first_chunk_ms=first_chunk_ms,
        )
        self._records[session_id] = record
        while len(self._records) > self.max_records:
            del self._records[next(iter(self._records))]
        return record

    def get(self, session_id: str) -> StreamTraceRecord:
        record = self._records.get(session_id)
        if record is None:
            raise KeyError(f"Trace not found: {session_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[StreamTraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate stream metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_streams": 0,
                "completed": 0,
                "errored": 0,
                "cancelled": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_first_chunk_ms": 0.0,
                "total_citations": 0,
                "total_malformed_elements": 0,
                "total_output_tokens": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        first_chunks = [r.first_chunk_ms for r in records if r.first_chunk_ms is not None]

        return {
            "total_streams": total,
            "completed": sum(1 for r in records if r.state == "closed_success"),
            "errored": sum(1 for r in records if r.state == "closed_error"),
            "cancelled": sum(1 for r in records if r.state == "cancelled"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_first_chunk_ms": sum(first_chunks) / len(first_chunks) if first_chunks else 0.0,
            "total_citations": sum(r.citation_count for r in records),
            "total_malformed_elements": sum(r.malformed_elements for r in records),
            "total_output_tokens": sum(r.output_tokens for r in records),
        }


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

    @property
    def running_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
