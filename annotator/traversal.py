"""
Traversal order over a property's sentences.

A traversal mode decides which sentences are visited and in which order.
The full ordered id list is held client-side so that the unlabeled scan can
wrap around without extra queries.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class TraversalMode(str, Enum):
    UNLABELED = "unlabeled"
    LEAST_LABELED = "least_labeled"
    ALL = "all"


MODE_TITLES = {
    TraversalMode.UNLABELED: "Unlabeled Only",
    TraversalMode.LEAST_LABELED: "Least Labeled",
    TraversalMode.ALL: "All Sentences",
}

ORDER_BY_ID = "id"
ORDER_BY_LABEL_COUNT = "label_count"


@dataclass(frozen=True)
class SentenceQuery:
    """Filter and ordering sent to the backend for one traversal mode."""
    unlabeled_only: bool
    order: str

    def params(self) -> dict:
        return {
            "unlabeled_only": "true" if self.unlabeled_only else "false",
            "order": self.order,
        }


def query_for_mode(mode: TraversalMode) -> SentenceQuery:
    mode = TraversalMode(mode)
    if mode == TraversalMode.UNLABELED:
        return SentenceQuery(unlabeled_only=True, order=ORDER_BY_ID)
    if mode == TraversalMode.LEAST_LABELED:
        # label_count ascending with nulls last, ties broken by id
        return SentenceQuery(unlabeled_only=False, order=ORDER_BY_LABEL_COUNT)
    return SentenceQuery(unlabeled_only=False, order=ORDER_BY_ID)


@dataclass
class TraversalIndex:
    """Visit order for one (property, mode) pair."""
    property_id: int
    mode: TraversalMode
    ids: list[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.ids)

    @property
    def query(self) -> SentenceQuery:
        return query_for_mode(self.mode)

    def position_of(self, sentence_id: int) -> Optional[int]:
        try:
            return self.ids.index(sentence_id)
        except ValueError:
            return None

    def next_index(self, current: int) -> int:
        """Step forward, wrapping to the start."""
        if not self.ids:
            return 0
        return current + 1 if current + 1 < self.count else 0

    def prev_index(self, current: int) -> int:
        """Step back, wrapping to the last sentence."""
        if not self.ids:
            return 0
        return current - 1 if current > 0 else self.count - 1


def build_traversal_index(backend, property_id: int, mode: TraversalMode) -> TraversalIndex:
    """
    Fetch the candidate count and ordered id list for a property.

    Both reads use the same filter. If labels land between the two reads the
    counts can disagree; the id list wins since it is what the scan walks.
    """
    mode = TraversalMode(mode)
    query = query_for_mode(mode)
    count = backend.count_sentences(property_id, query)
    ids = backend.list_sentence_ids(property_id, query)
    if count != len(ids):
        logger.warning(
            "Sentence count %d and id list length %d disagree for property %s (%s)",
            count, len(ids), property_id, mode.value,
        )
    return TraversalIndex(property_id=property_id, mode=mode, ids=list(ids))


# ============================================================================
# Unlabeled scan
# ============================================================================

FORWARD = 1
BACKWARD = -1


@dataclass(frozen=True)
class ScanResult:
    """Outcome of an unlabeled scan: the index to move to, or exhausted."""
    index: Optional[int]

    @property
    def exhausted(self) -> bool:
        return self.index is None


def find_unlabeled(ids: list[int], labeled: set[int], current: int, direction: int = FORWARD) -> ScanResult:
    """
    Find the nearest id not in `labeled`, wrapping around exactly once.

    Forward scans current+1 .. end then 0 .. current-1; backward scans
    current-1 .. 0 then end .. current+1. The current position itself is
    never a candidate.
    """
    total = len(ids)
    if direction == FORWARD:
        order = list(range(current + 1, total)) + list(range(0, min(current, total)))
    elif direction == BACKWARD:
        order = list(range(min(current, total) - 1, -1, -1)) + list(range(total - 1, current, -1))
    else:
        raise ValueError(f"direction must be {FORWARD} or {BACKWARD}, got {direction}")

    for i in order:
        if ids[i] not in labeled:
            return ScanResult(i)
    return ScanResult(None)
