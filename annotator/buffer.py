"""
Sparse sentence buffer addressed by traversal index.

Sentences are fetched in fixed-size batches aligned to batch boundaries and
stored at their absolute offsets, so batches may complete in any order.
Every reset bumps the generation; a batch issued under an older generation
is dropped when it completes.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)

BATCH_SIZE = 10


@dataclass(frozen=True)
class BatchRequest:
    """An issued batch fetch, tagged with the buffer generation it belongs to."""
    generation: int
    offset: int
    limit: int
    reset: bool = False


class SentenceBuffer:
    def __init__(self, batch_size: int = BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.generation = 0
        self.has_more = True
        self.in_flight: Optional[BatchRequest] = None
        self._rows: dict = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, index: int) -> bool:
        return index in self._rows

    def get(self, index: int):
        return self._rows.get(index)

    def populated(self) -> list[int]:
        return sorted(self._rows)

    def batch_bounds(self, index: int) -> tuple[int, int]:
        """Offset and limit of the batch containing `index`."""
        start = (index // self.batch_size) * self.batch_size
        return start, self.batch_size

    def reset(self) -> int:
        """Drop every row and invalidate outstanding fetches."""
        self.generation += 1
        self._rows = {}
        self.has_more = True
        self.in_flight = None
        return self.generation

    def begin(self, index: int, reset: bool = False) -> Optional[BatchRequest]:
        """
        Claim the fetch for the batch containing `index`.

        Returns None when the index is already populated or another fetch
        is in flight. A reset fetch ignores the in-flight guard.
        """
        if index < 0:
            raise IndexError(f"Negative traversal index {index}")
        if not reset:
            if index in self._rows:
                return None
            if self.in_flight is not None:
                return None
        offset, limit = self.batch_bounds(index)
        request = BatchRequest(self.generation, offset, limit, reset=reset)
        self.in_flight = request
        return request

    def complete(self, request: BatchRequest, rows: list) -> bool:
        """Merge a finished batch. Returns False if the batch was stale and dropped."""
        if request.generation != self.generation:
            logger.debug(
                "Dropping stale batch at offset %d (generation %d, current %d)",
                request.offset, request.generation, self.generation,
            )
            return False

        if request.reset:
            self._rows = {}
        for i, row in enumerate(rows):
            self._rows[request.offset + i] = row
        if len(rows) < request.limit:
            self.has_more = False

        if self.in_flight == request:
            self.in_flight = None
        return True

    def fail(self, request: BatchRequest) -> None:
        """Release the in-flight slot after a failed fetch; the batch stays empty."""
        if self.in_flight == request:
            self.in_flight = None

    def update(self, index: int, **changes) -> bool:
        """Replace fields on a buffered sentence (used for optimistic label_count)."""
        row = self._rows.get(index)
        if row is None:
            return False
        self._rows[index] = replace(row, **changes)
        return True
