"""Citation registry keyed by reference id."""

from __future__ import annotations

import logging
from enum import Enum

from answer_stream.stream.elements import Citation

logger = logging.getLogger(__name__)


class AddResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class CitationRegistry:
    """Insertion-ordered citations; the first citation for a ref id wins."""

    def __init__(self) -> None:
        self._citations: dict[str, Citation] = {}
        self._snapshot: tuple[Citation, ...] = ()
        self.duplicates = 0

    def __len__(self) -> int:
        return len(self._citations)

    def __contains__(self, ref_id: object) -> bool:
        return ref_id in self._citations

    def add(self, citation: Citation) -> AddResult:
        if citation.ref_id in self._citations:
            self.duplicates += 1
            logger.debug("Duplicate citation %s absorbed", citation.ref_id)
            return AddResult.DUPLICATE
        self._citations[citation.ref_id] = citation
        self._snapshot = (*self._snapshot, citation)
        return AddResult.ACCEPTED

    def snapshot(self) -> tuple[Citation, ...]:
        return self._snapshot
