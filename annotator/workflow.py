"""
Annotation session: traversal, buffering and the label save cycle.

One session walks one property's sentences under one traversal mode.
Changing either rebuilds the traversal index, resets the buffer and moves
back to the first sentence. Every remote call is wrapped here; failures are
logged and reported through return values, never raised to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .api_client import SIGNED_IN, SIGNED_OUT, Label, Sentence
from .buffer import BATCH_SIZE, SentenceBuffer
from .labels import CounterOutcome, LabelCounter, LabelDraft, ValidationIssue, label_count_delta
from .session import Preferences
from .traversal import (
    BACKWARD,
    FORWARD,
    ScanResult,
    TraversalIndex,
    TraversalMode,
    build_traversal_index,
    find_unlabeled,
)

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """Outcome of saving (or removing) a label."""
    label: Optional[Label] = None
    created: bool = False
    delta: int = 0
    counter: Optional[CounterOutcome] = None
    issue: Optional[ValidationIssue] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.issue is None and self.error is None


class AnnotationSession:
    def __init__(self, backend, preferences: Optional[Preferences] = None, batch_size: int = BATCH_SIZE):
        self.backend = backend
        self.preferences = preferences or Preferences()
        self.buffer = SentenceBuffer(batch_size)
        self.counter = LabelCounter(backend)

        self.property_id: Optional[int] = self.preferences.property_id
        self.mode: TraversalMode = self.preferences.traversal_mode
        self.index: Optional[TraversalIndex] = None
        self.position = 0
        self.labeled_ids: set[int] = set()
        self.draft: Optional[LabelDraft] = None
        self.error: Optional[str] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, property_id: int, mode: Optional[TraversalMode] = None) -> bool:
        """Switch to a property (and optionally a mode) and reload."""
        self.property_id = property_id
        if mode is not None:
            self.mode = TraversalMode(mode)
        return self.reload()

    def set_mode(self, mode: TraversalMode) -> bool:
        self.mode = TraversalMode(mode)
        if self.property_id is None:
            return False
        return self.reload()

    def reload(self) -> bool:
        """
        Rebuild the traversal index and labeled set, then fetch the first batch.

        Cached label counts are discarded with the buffer. Returns False and
        sets `error` if the index or labeled set cannot be loaded.
        """
        self.buffer.reset()
        self.index = None
        self.position = 0
        self.draft = None
        self.labeled_ids = set()
        self.error = None

        if self.property_id is None:
            self.error = "No property selected"
            return False

        try:
            index = build_traversal_index(self.backend, self.property_id, self.mode)
            labeled = self.backend.fetch_user_labeled_ids(self.property_id)
        except httpx.HTTPError as e:
            logger.error("Failed to load property %s (%s): %s", self.property_id, self.mode.value, e)
            self.error = f"Could not load sentences: {e}"
            return False

        self.index = index
        self.labeled_ids = set(labeled)
        if index.count:
            self._fetch(0, reset=True)
        return True

    def _fetch(self, index: int, reset: bool = False) -> bool:
        request = self.buffer.begin(index, reset=reset)
        if request is None:
            return False
        # Batches come from the id list read at reload; counts may have moved since
        ids = self.index.ids[request.offset:request.offset + request.limit]
        try:
            rows = self.backend.fetch_sentence_batch(
                self.property_id, self.index.query, request.offset, request.limit, ids=ids
            )
        except httpx.HTTPError as e:
            logger.warning("Batch fetch at offset %d failed: %s", request.offset, e)
            self.buffer.fail(request)
            return False
        return self.buffer.complete(request, self._align(ids, rows))

    def _align(self, ids: list[int], rows: list[Sentence]) -> list[Sentence]:
        """Rows in `ids` order, cut at the first id the backend no longer has."""
        by_id = {row.id: row for row in rows}
        aligned = []
        for sentence_id in ids:
            row = by_id.get(sentence_id)
            if row is None:
                logger.warning("Sentence %s disappeared since the traversal index was built", sentence_id)
                break
            aligned.append(row)
        return aligned

    def ensure_loaded(self, index: int) -> Optional[Sentence]:
        """Return the sentence at a traversal index, fetching its batch on a miss."""
        if self.index is None or not 0 <= index < self.index.count:
            return None
        if index not in self.buffer:
            self._fetch(index)
        return self.buffer.get(index)

    def handle_auth_change(self, event: str, user) -> None:
        """Auth listener: drop per-user state on sign-out, reload on sign-in."""
        if event == SIGNED_OUT:
            self.buffer.reset()
            self.index = None
            self.labeled_ids = set()
            self.draft = None
            self.position = 0
        elif event == SIGNED_IN and self.property_id is not None:
            self.reload()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @property
    def total(self) -> int:
        return self.index.count if self.index else 0

    def current_sentence(self) -> Optional[Sentence]:
        return self.ensure_loaded(self.position)

    def current_label(self) -> Optional[Label]:
        """The user's stored label for the current sentence, if any."""
        sentence = self.current_sentence()
        # Only sentences in the labeled set can have a label; skip the call otherwise
        if sentence is None or sentence.id not in self.labeled_ids:
            return None
        try:
            return self.backend.fetch_label(sentence.id)
        except httpx.HTTPError as e:
            logger.warning("Could not fetch label for sentence %s: %s", sentence.id, e)
            return None

    def go_to(self, index: int) -> bool:
        if not 0 <= index < self.total:
            return False
        self.position = index
        self.draft = None
        return True

    def next(self) -> int:
        if self.index is not None:
            self.go_to(self.index.next_index(self.position))
        return self.position

    def prev(self) -> int:
        if self.index is not None:
            self.go_to(self.index.prev_index(self.position))
        return self.position

    def _scan(self, direction: int) -> ScanResult:
        if self.index is None:
            return ScanResult(None)
        result = find_unlabeled(self.index.ids, self.labeled_ids, self.position, direction)
        if not result.exhausted:
            self.go_to(result.index)
        return result

    def next_unlabeled(self) -> ScanResult:
        return self._scan(FORWARD)

    def prev_unlabeled(self) -> ScanResult:
        return self._scan(BACKWARD)

    def progress(self) -> dict:
        return {
            "property_id": self.property_id,
            "mode": self.mode.value,
            "position": self.position + 1 if self.total else 0,
            "total": self.total,
            "labeled": len(self.labeled_ids),
            "has_more": self.buffer.has_more,
        }

    # ------------------------------------------------------------------
    # Labeling
    # ------------------------------------------------------------------

    def start_draft(self) -> Optional[LabelDraft]:
        """Open the current sentence for editing, seeded with any stored label."""
        sentence = self.current_sentence()
        if sentence is None:
            self.draft = None
            return None
        label = self.current_label()
        self.draft = LabelDraft.from_label(sentence.id, sentence.text, label, property_id=self.property_id)
        return self.draft

    def edit_label(self, label: Label) -> LabelDraft:
        """Open a stored label (e.g. from history) for editing outside traversal."""
        self.draft = LabelDraft.from_label(label.sentence_id, label.sentence_text or "", label)
        return self.draft

    def _buffer_position(self, sentence_id: int) -> Optional[int]:
        current = self.buffer.get(self.position)
        if current is not None and current.id == sentence_id:
            return self.position
        for i in self.buffer.populated():
            if self.buffer.get(i).id == sentence_id:
                return i
        return None

    def _apply_delta(self, sentence_id: int, delta: int) -> CounterOutcome:
        pos = self._buffer_position(sentence_id)
        cached = self.buffer.get(pos).label_count if pos is not None else 0
        outcome = self.counter.adjust(sentence_id, delta, cached)
        if pos is not None:
            self.buffer.update(pos, label_count=outcome.label_count)
        return outcome

    def save(self, draft: Optional[LabelDraft] = None) -> SaveResult:
        """
        Validate and persist a draft.

        On success the counter is adjusted by the delta implied by whether
        the backend created a new row, the sentence joins the labeled set,
        and if it was the current sentence the pointer advances. On failure
        nothing moves.
        """
        draft = draft or self.draft
        if draft is None:
            return SaveResult(issue=ValidationIssue("sentence", "No sentence is being labeled"))

        issue = draft.validate()
        if issue is not None:
            return SaveResult(issue=issue)

        property_id = draft.property_id if draft.property_id is not None else self.property_id
        label = Label(
            sentence_id=draft.sentence_id,
            property_id=property_id,
            kind=draft.kind,
            subject=draft.subject,
            object=draft.object,
        )
        try:
            saved, created = self.backend.upsert_label(label)
        except httpx.HTTPError as e:
            logger.error("Saving label for sentence %s failed: %s", draft.sentence_id, e)
            return SaveResult(error=f"Could not save label: {e}")

        delta = label_count_delta(created)
        outcome = self._apply_delta(draft.sentence_id, delta)
        self.labeled_ids.add(draft.sentence_id)

        current = self.buffer.get(self.position)
        if current is not None and current.id == draft.sentence_id:
            self.next()
        self.draft = None
        return SaveResult(label=saved, created=created, delta=delta, counter=outcome)

    def remove_label(self, sentence_id: Optional[int] = None) -> SaveResult:
        """Delete the user's label on a sentence (default: the current one)."""
        if sentence_id is None:
            sentence = self.current_sentence()
            if sentence is None:
                return SaveResult(issue=ValidationIssue("sentence", "No sentence is being labeled"))
            sentence_id = sentence.id

        try:
            removed = self.backend.delete_label(sentence_id)
        except httpx.HTTPError as e:
            logger.error("Removing label for sentence %s failed: %s", sentence_id, e)
            return SaveResult(error=f"Could not remove label: {e}")
        if not removed:
            return SaveResult(issue=ValidationIssue("label", "No label to remove"))

        delta = label_count_delta(False, removed=True)
        outcome = self._apply_delta(sentence_id, delta)
        self.labeled_ids.discard(sentence_id)
        self.draft = None
        return SaveResult(delta=delta, counter=outcome)
