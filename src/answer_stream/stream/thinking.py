"""Thinking-trace builder: folds flat branch/leaf/duration events into a tree."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from answer_stream.stream.elements import (
    ThinkingBranch,
    ThinkingDuration,
    ThinkingElement,
    ThinkingLeaf,
)
from answer_stream.types import ThinkingNode

logger = logging.getLogger(__name__)

VIRTUAL_ROOT_ID = "root"


@dataclass(slots=True)
class _NodeRecord:
    node_id: str
    parent_id: str | None = None
    label: str = ""
    kind: str | None = None
    duration_ms: int | None = None
    seq: int = -1

    @property
    def resolved(self) -> bool:
        return self.kind is not None


class ThinkingTraceBuilder:
    """Collects thinking events keyed by node id and builds the tree once.

    Nodes live in a flat map; parent/child links are only computed in
    :meth:`finalize`, so events may arrive in any order. The first branch/leaf
    event for an id wins; repeats are counted in ``duplicates``.
    """

    def __init__(self, *, max_nodes: int = 10_000) -> None:
        self.max_nodes = max_nodes
        self.duplicates = 0
        self.dropped = 0
        self._records: dict[str, _NodeRecord] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._records)

    def ingest(self, element: ThinkingElement) -> None:
        record = self._records.get(element.node_id)
        if record is None:
            if len(self._records) >= self.max_nodes:
                if self.dropped == 0:
                    logger.warning(
                        "Thinking trace exceeded %d nodes; dropping further nodes",
                        self.max_nodes,
                    )
                self.dropped += 1
                return
            record = _NodeRecord(node_id=element.node_id)
            self._records[element.node_id] = record

        if isinstance(element, ThinkingDuration):
            record.duration_ms = element.millis
            return

        if record.resolved:
            self.duplicates += 1
            logger.debug("Ignoring duplicate thinking node %s", element.node_id)
            return

        record.kind = "branch" if isinstance(element, ThinkingBranch) else "leaf"
        record.parent_id = element.parent_id
        record.label = element.label
        record.seq = self._seq
        self._seq += 1

    def finalize(self) -> ThinkingNode | None:
        """Build the tree. Returns None when no node ever resolved."""
        records = sorted(
            (record for record in self._records.values() if record.resolved),
            key=lambda record: record.seq,
        )
        pending = len(self._records) - len(records)
        if pending:
            logger.debug("Dropping %d thinking placeholders without node data", pending)
        if not records:
            return None

        known = {record.node_id for record in records}
        children: dict[str, list[str]] = {record.node_id: [] for record in records}
        roots: list[str] = []
        for record in records:
            parent = record.parent_id
            if parent is None or parent == record.node_id or parent not in known:
                roots.append(record.node_id)
            else:
                children[parent].append(record.node_id)

        by_id = {record.node_id: record for record in records}
        placed: set[str] = set()
        trees: list[ThinkingNode] = []
        for root_id in roots:
            trees.append(self._build(root_id, by_id, children, placed))

        # Whatever is left hangs off a cycle; cut it at its earliest node.
        for record in records:
            if record.node_id not in placed:
                trees.append(self._build(record.node_id, by_id, children, placed))

        if len(trees) == 1:
            return trees[0]
        return ThinkingNode(
            id=VIRTUAL_ROOT_ID,
            parent_id=None,
            label="",
            kind="branch",
            children=tuple(trees),
        )

    @staticmethod
    def _build(
        root_id: str,
        by_id: dict[str, _NodeRecord],
        children: dict[str, list[str]],
        placed: set[str],
    ) -> ThinkingNode:
        order: list[str] = []
        stack = [root_id]
        while stack:
            node_id = stack.pop()
            if node_id in placed:
                continue
            placed.add(node_id)
            order.append(node_id)
            stack.extend(reversed(children[node_id]))

        built: dict[str, ThinkingNode] = {}
        for node_id in reversed(order):
            record = by_id[node_id]
            kids = tuple(
                built.pop(child)
                for child in children[node_id]
                if child in built
            )
            built[node_id] = ThinkingNode(
                id=node_id,
                parent_id=None if node_id == root_id else record.parent_id,
                label=record.label,
                kind="branch" if record.kind == "branch" else "leaf",
                duration_ms=record.duration_ms,
                children=kids,
            )
        return built[root_id]
