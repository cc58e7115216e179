"""
Alignment labels: kinds, spans, validation and the label lifecycle.

A label records how well a sentence expresses a property p(D, R):

    pdr  Full alignment            p(D, R)  subject and object required
    pd   Property and domain       p(D, ?)  subject required, object forbidden
    pr   Property and range        p(?, R)  object required, subject forbidden
    p    Property only             p(?, ?)  spans optional
    n    No alignment                       no spans allowed

Spans are inclusive start/end indices into the whitespace-tokenized sentence.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class LabelKind(str, Enum):
    FULL = "pdr"
    DOMAIN = "pd"
    RANGE = "pr"
    PROPERTY = "p"
    NONE = "n"


LABEL_TITLES = {
    LabelKind.FULL: "Full alignment: p(D, R)",
    LabelKind.DOMAIN: "Property and domain are aligned: p(D, ?)",
    LabelKind.RANGE: "Property and range are aligned: p(?, R)",
    LabelKind.PROPERTY: "Property expressed, but D&R do not align: p(?, ?)",
    LabelKind.NONE: "No alignment",
}

LABEL_DESCRIPTIONS = {
    LabelKind.FULL: "Property, Domain & Range match",
    LabelKind.DOMAIN: "Only Domain matches",
    LabelKind.RANGE: "Only Range matches",
    LabelKind.PROPERTY: "Only Property matches",
    LabelKind.NONE: "Not relevant",
}

# Span requirements per kind: (subject, object)
REQUIRED = "required"
FORBIDDEN = "forbidden"
OPTIONAL = "optional"

SPAN_RULES = {
    LabelKind.FULL: (REQUIRED, REQUIRED),
    LabelKind.DOMAIN: (REQUIRED, FORBIDDEN),
    LabelKind.RANGE: (FORBIDDEN, REQUIRED),
    LabelKind.PROPERTY: (OPTIONAL, OPTIONAL),
    LabelKind.NONE: (FORBIDDEN, FORBIDDEN),
}


def tokenize(text: str) -> list[str]:
    """Split sentence text into the tokens spans refer to."""
    return text.split()


@dataclass(frozen=True)
class Span:
    """Inclusive token range."""
    start: int
    end: int

    def __post_init__(self):
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid span [{self.start}, {self.end}]")

    def covers(self, index: int) -> bool:
        return self.start <= index <= self.end

    @classmethod
    def from_bounds(cls, start: Optional[int], end: Optional[int]) -> Optional["Span"]:
        """Build a span from nullable column values."""
        if start is None or end is None:
            return None
        return cls(start, end)


@dataclass(frozen=True)
class ValidationIssue:
    """A rejected save, pointing at the field the user has to fix."""
    field: str
    message: str


def validate_label(
    kind: Optional[LabelKind],
    subject: Optional[Span],
    obj: Optional[Span],
    token_count: Optional[int] = None,
) -> Optional[ValidationIssue]:
    """
    Check a kind/span combination against SPAN_RULES.

    Returns None when the label may be saved.
    """
    if kind is None:
        return ValidationIssue("label", "Choose a label")
    kind = LabelKind(kind)

    if token_count is not None:
        for field_name, span in (("subject", subject), ("object", obj)):
            if span is not None and span.end >= token_count:
                return ValidationIssue(
                    field_name,
                    f"{field_name.capitalize()} span [{span.start}, {span.end}] is outside the sentence "
                    f"({token_count} tokens)",
                )

    if kind == LabelKind.FULL:
        if subject is None or obj is None:
            return ValidationIssue("subject" if subject is None else "object", "Select subject and object spans")
    elif kind == LabelKind.DOMAIN:
        if subject is None:
            return ValidationIssue("subject", "Select subject span")
        if obj is not None:
            return ValidationIssue("object", 'Clear object span for "pd" (Property Domain)')
    elif kind == LabelKind.RANGE:
        if obj is None:
            return ValidationIssue("object", "Select object span")
        if subject is not None:
            return ValidationIssue("subject", 'Clear subject span for "pr" (Property Range)')
    elif kind == LabelKind.NONE:
        if subject is not None or obj is not None:
            return ValidationIssue(
                "subject" if subject is not None else "object",
                'No spans should be selected for "n"',
            )
    return None


def label_count_delta(created: bool, removed: bool = False) -> int:
    """
    Counter change caused by a label write.

    A first label by a user on a sentence adds one, correcting an existing
    label leaves the count alone, and an explicit removal subtracts one.
    """
    if removed:
        return -1
    return 1 if created else 0


# ============================================================================
# Span picking
# ============================================================================

class PickMode(str, Enum):
    IDLE = "idle"
    SUBJECT = "subject"
    OBJECT = "object"


class LabelDraft:
    """
    Editable label for one sentence.

    Arming a role (subject/object) makes the next token click start a
    single-token span and the click after that extend it, then the draft
    returns to idle. Arming the already armed role disarms it.
    """

    def __init__(
        self,
        sentence_id: int,
        text: str,
        kind: Optional[LabelKind] = None,
        subject: Optional[Span] = None,
        obj: Optional[Span] = None,
        existing: bool = False,
        property_id: Optional[int] = None,
    ):
        self.sentence_id = sentence_id
        self.property_id = property_id
        self.tokens = tokenize(text)
        self.kind = LabelKind(kind) if kind is not None else None
        self.subject = subject
        self.object = obj
        self.existing = existing
        self.mode = PickMode.IDLE
        self._anchor: Optional[int] = None

    @classmethod
    def from_label(cls, sentence_id: int, text: str, label, property_id: Optional[int] = None) -> "LabelDraft":
        """Start a draft from a stored label, or an empty one if there is none."""
        if label is None:
            return cls(sentence_id, text, property_id=property_id)
        return cls(
            sentence_id,
            text,
            kind=label.kind,
            subject=label.subject,
            obj=label.object,
            existing=True,
            property_id=label.property_id if property_id is None else property_id,
        )

    def arm(self, role: PickMode) -> PickMode:
        role = PickMode(role)
        if role == PickMode.IDLE or self.mode == role:
            self.mode = PickMode.IDLE
        else:
            self.mode = role
        self._anchor = None
        return self.mode

    def click(self, index: int) -> Optional[Span]:
        """Handle a click on token `index`. Returns the span that changed, if any."""
        if not 0 <= index < len(self.tokens):
            raise IndexError(f"Token index {index} out of range (0-{len(self.tokens) - 1})")
        if self.mode == PickMode.IDLE:
            return None

        role = self.mode
        if self._anchor is None:
            # First click: single-token span, stay armed for the end point
            self._anchor = index
            span = Span(index, index)
        else:
            span = Span(min(self._anchor, index), max(self._anchor, index))
            self.mode = PickMode.IDLE
            self._anchor = None

        if role == PickMode.SUBJECT:
            self.subject = span
        else:
            self.object = span
        return span

    def clear_subject(self) -> None:
        self.subject = None

    def clear_object(self) -> None:
        self.object = None

    def select_kind(self, kind: Optional[LabelKind]) -> Optional[LabelKind]:
        """Choose a kind; choosing the current kind again deselects it."""
        kind = LabelKind(kind) if kind is not None else None
        self.kind = None if kind == self.kind else kind
        return self.kind

    def validate(self) -> Optional[ValidationIssue]:
        return validate_label(self.kind, self.subject, self.object, token_count=len(self.tokens))

    def span_text(self, span: Optional[Span]) -> Optional[str]:
        if span is None:
            return None
        return " ".join(self.tokens[span.start:span.end + 1])


# ============================================================================
# Label counter
# ============================================================================

ATOMIC = "atomic"
DIRECT = "direct"
FAILED = "failed"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class CounterOutcome:
    """Result of a counter adjustment: the count to show locally and how it was written."""
    label_count: int
    method: str


class LabelCounter:
    """
    Two-step label_count adjustment.

    The primary step calls the backend's atomic increment/decrement
    procedure. If that fails, the secondary step reads the sentence's
    current label_count and writes `read + delta` (floored at 0). Another
    labeler can write between the read and the write, so this step can
    lose a concurrent increment; it only runs when the atomic procedure is
    unavailable. `cached_count` is used for the returned count only when
    nothing could be written.
    """

    def __init__(self, backend):
        self.backend = backend

    def adjust(self, sentence_id: int, delta: int, cached_count: int) -> CounterOutcome:
        optimistic = max(0, (cached_count or 0) + delta)
        if delta == 0:
            return CounterOutcome(cached_count or 0, UNCHANGED)

        try:
            remote = self.backend.adjust_label_count(sentence_id, delta)
        except httpx.HTTPError as e:
            logger.warning("Atomic label_count %+d failed for sentence %s: %s", delta, sentence_id, e)
        else:
            return CounterOutcome(remote if remote is not None else optimistic, ATOMIC)

        try:
            sentence = self.backend.fetch_sentence(sentence_id)
            if sentence is None:
                logger.error("Sentence %s vanished before its label_count could be written", sentence_id)
                return CounterOutcome(optimistic, FAILED)
            written = max(0, (sentence.label_count or 0) + delta)
            self.backend.set_label_count(sentence_id, written)
        except httpx.HTTPError as e:
            logger.error("Fallback label_count update also failed for sentence %s: %s", sentence_id, e)
            return CounterOutcome(optimistic, FAILED)
        return CounterOutcome(written, DIRECT)
