"""
Tests for the annotation session: loading, navigation and the save cycle.
"""
import pytest

from annotator.api_client import SIGNED_IN, SIGNED_OUT, Label
from annotator.labels import ATOMIC, DIRECT, FAILED, UNCHANGED, CounterOutcome, LabelKind, PickMode, Span
from annotator.session import Preferences
from annotator.traversal import TraversalMode
from annotator.workflow import AnnotationSession


@pytest.fixture
def session(fake_backend):
    s = AnnotationSession(fake_backend, Preferences(mode=TraversalMode.UNLABELED.value))
    assert s.load(1)
    return s


def label_current(session, kind, subject=None, obj=None):
    draft = session.start_draft()
    draft.kind = kind
    draft.subject = subject
    draft.object = obj
    return session.save()


class TestLoading:
    def test_load_fetches_index_and_first_batch(self, session, fake_backend):
        assert session.total == 3
        assert session.index.ids == [1, 2, 3]
        assert session.current_sentence().id == 1
        assert fake_backend.call_names()[:4] == [
            "count_sentences", "list_sentence_ids", "fetch_user_labeled_ids", "fetch_sentence_batch",
        ]

    def test_defaults_from_preferences(self, fake_backend):
        s = AnnotationSession(fake_backend, Preferences(property_id=1, mode="least_labeled"))
        assert s.property_id == 1
        assert s.mode == TraversalMode.LEAST_LABELED

    def test_reload_without_property(self, fake_backend):
        s = AnnotationSession(fake_backend)
        assert s.reload() is False
        assert s.error == "No property selected"

    def test_index_failure_sets_error(self, fake_backend):
        fake_backend.fail_index = True
        s = AnnotationSession(fake_backend)
        assert s.load(1) is False
        assert "Could not load sentences" in s.error
        assert s.total == 0
        assert s.current_sentence() is None

    def test_empty_property(self, fake_backend):
        s = AnnotationSession(fake_backend)
        assert s.load(2) is True
        assert s.total == 0
        assert "fetch_sentence_batch" not in fake_backend.call_names()

    def test_mode_change_resets_position(self, session):
        session.next()
        assert session.position == 1
        session.set_mode(TraversalMode.ALL)
        assert session.position == 0
        assert session.mode == TraversalMode.ALL

    def test_reload_rederives_counts(self, session, fake_backend):
        session.current_sentence()
        fake_backend.sentences[1].label_count = 4
        session.set_mode(TraversalMode.ALL)
        assert session.current_sentence().label_count == 4

    def test_batch_failure_retried_on_next_access(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        backend.fail_batches = True
        s.load(1, TraversalMode.ALL)
        assert s.current_sentence() is None

        backend.fail_batches = False
        assert s.current_sentence().id == 1

    def test_lazy_batches(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.ALL)
        assert s.go_to(12)
        assert s.current_sentence().id == 13
        assert s.buffer.populated() == list(range(0, 20))
        assert 20 not in s.buffer
        batches = [c for c in backend.calls if c[0] == "fetch_sentence_batch"]
        assert [(c[2], c[3]) for c in batches] == [(0, 10), (10, 10)]

    def test_stale_batch_dropped_after_property_switch(self, make_backend):
        backend = make_backend(5, property_id=1)
        for i in range(3):
            backend.sentences[100 + i] = type(backend.sentences[1])(
                id=100 + i, text=f"Other property {i}", property_id=2,
            )
        s = AnnotationSession(backend)
        # The property 1 batch returns only after the user switched to property 2
        backend.on_batch = lambda: s.load(2, TraversalMode.ALL)
        s.load(1, TraversalMode.ALL)

        assert s.property_id == 2
        assert [s.buffer.get(i).id for i in s.buffer.populated()] == [100, 101, 102]


class TestUnlabeledSnapshot:
    """Batches follow the id list read at load, not the live unlabeled filter."""

    def test_save_past_batch_boundary(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.UNLABELED)

        for _ in range(10):
            assert label_current(s, LabelKind.NONE).ok
        assert s.position == 10
        assert s.current_sentence().id == s.index.ids[10] == 11
        assert s.ensure_loaded(24).id == 25

    def test_every_sentence_reached_once(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.UNLABELED)

        seen = []
        for _ in range(25):
            seen.append(s.current_sentence().id)
            label_current(s, LabelKind.NONE)
        assert seen == list(range(1, 26))
        assert all(sentence.label_count == 1 for sentence in backend.sentences.values())

    def test_scan_lands_on_displayed_sentence(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.UNLABELED)
        for _ in range(12):
            label_current(s, LabelKind.NONE)

        s.go_to(0)
        result = s.next_unlabeled()
        assert result.index == 12
        assert s.current_sentence().id == s.index.ids[12] == 13

    def test_missing_sentence_truncates_batch(self, make_backend, caplog):
        backend = make_backend(5)
        s = AnnotationSession(backend, batch_size=2)
        s.load(1, TraversalMode.ALL)
        del backend.sentences[4]

        assert s.ensure_loaded(2).id == 3
        assert s.ensure_loaded(3) is None
        assert 3 not in s.buffer
        assert "Sentence 4 disappeared" in caplog.text


class TestNavigation:
    def test_next_and_prev_wrap(self, session):
        assert session.prev() == 2
        assert session.next() == 0
        assert session.next() == 1

    def test_go_to_bounds(self, session):
        assert session.go_to(3) is False
        assert session.go_to(-1) is False
        assert session.position == 0

    def test_next_unlabeled_skips_labeled(self, session, fake_backend):
        session.labeled_ids = {2}
        result = session.next_unlabeled()
        assert result.index == 2
        assert session.position == 2

    def test_unlabeled_exhausted_does_not_move(self, session):
        session.labeled_ids = {2, 3}
        result = session.next_unlabeled()
        assert result.exhausted
        assert session.position == 0

    def test_prev_unlabeled(self, session):
        result = session.prev_unlabeled()
        assert result.index == 2

    def test_progress(self, session):
        assert session.progress() == {
            "property_id": 1,
            "mode": "unlabeled",
            "position": 1,
            "total": 3,
            "labeled": 0,
            "has_more": False,
        }


class TestSave:
    def test_first_save_scenario(self, session, fake_backend):
        """Save "n" on sentence 1 of three unlabeled sentences."""
        result = label_current(session, LabelKind.NONE)

        assert result.ok
        assert result.created is True
        assert result.delta == 1
        assert result.counter.method == ATOMIC
        assert fake_backend.sentences[1].label_count == 1
        assert session.buffer.get(0).label_count == 1
        assert session.labeled_ids == {1}
        assert session.current_sentence().id == 2

    def test_resave_keeps_count(self, session, fake_backend):
        label_current(session, LabelKind.NONE)
        session.go_to(0)
        result = label_current(session, LabelKind.NONE)

        assert result.created is False
        assert result.delta == 0
        assert result.counter.method == UNCHANGED
        assert fake_backend.sentences[1].label_count == 1
        assert fake_backend.call_names().count("adjust_label_count") == 1

    def test_validation_failure_makes_no_call(self, session, fake_backend):
        result = label_current(session, LabelKind.DOMAIN, subject=Span(0, 0), obj=Span(2, 2))

        assert not result.ok
        assert result.issue.message.startswith("Clear object span")
        assert "upsert_label" not in fake_backend.call_names()
        assert session.position == 0
        assert session.draft is not None

    def test_upsert_failure_stays_put(self, session, fake_backend):
        fake_backend.fail_upsert = True
        result = label_current(session, LabelKind.NONE)

        assert not result.ok
        assert "Could not save label" in result.error
        assert session.position == 0
        assert session.labeled_ids == set()
        assert "adjust_label_count" not in fake_backend.call_names()

    def test_counter_fallback(self, session, fake_backend):
        fake_backend.fail_rpc = True
        result = label_current(session, LabelKind.NONE)

        assert result.ok
        assert result.counter.method == DIRECT
        assert ("set_label_count", 1, 1) in fake_backend.calls
        assert fake_backend.sentences[1].label_count == 1

    def test_counter_total_failure_still_saved(self, session, fake_backend):
        fake_backend.fail_rpc = True
        fake_backend.fail_direct = True
        result = label_current(session, LabelKind.NONE)

        assert result.ok
        assert result.counter.method == FAILED
        assert 1 in fake_backend.labels
        assert session.labeled_ids == {1}
        assert session.current_sentence().id == 2

    def test_round_trip(self, session, fake_backend):
        label_current(session, LabelKind.FULL, subject=Span(0, 0), obj=Span(5, 5))
        session.go_to(0)
        draft = session.start_draft()
        assert draft.existing
        assert draft.kind == LabelKind.FULL
        assert draft.subject == Span(0, 0)
        assert draft.object == Span(5, 5)

    def test_span_picking_then_save(self, session, fake_backend):
        draft = session.start_draft()
        draft.arm(PickMode.SUBJECT)
        draft.click(0)
        draft.click(0)
        draft.arm(PickMode.OBJECT)
        draft.click(5)
        draft.click(4)
        draft.select_kind(LabelKind.FULL)
        assert session.save().ok
        assert fake_backend.labels[1].object == Span(4, 5)

    def test_save_without_draft(self, session):
        result = session.save()
        assert result.issue.field == "sentence"

    def test_current_label_skips_fetch_when_unlabeled(self, session, fake_backend):
        assert session.current_label() is None
        assert "fetch_label" not in fake_backend.call_names()

    def test_edit_from_history_does_not_move(self, session, fake_backend):
        label_current(session, LabelKind.NONE)
        stored = fake_backend.labels[1]
        draft = session.edit_label(stored)
        draft.select_kind(LabelKind.PROPERTY)
        result = session.save(draft)

        assert result.ok
        assert result.created is False
        assert fake_backend.labels[1].kind == LabelKind.PROPERTY
        assert session.current_sentence().id == 2

    def test_edit_label_outside_buffer(self, session, fake_backend):
        label = Label(sentence_id=3, property_id=1, kind=LabelKind.NONE, sentence_text="It rained yesterday .")
        fake_backend.labels[3] = label
        draft = session.edit_label(label)
        draft.select_kind(LabelKind.PROPERTY)
        assert session.save(draft).ok


class TestRemove:
    def test_remove_decrements(self, session, fake_backend):
        label_current(session, LabelKind.NONE)
        result = session.remove_label(1)

        assert result.ok
        assert result.delta == -1
        assert fake_backend.sentences[1].label_count == 0
        assert session.labeled_ids == set()

    def test_remove_missing(self, session):
        result = session.remove_label(2)
        assert result.issue.message == "No label to remove"

    def test_fallback_outside_buffer_reads_stored_count(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.ALL)
        backend.sentences[25].label_count = 5
        backend.labels[25] = Label(sentence_id=25, property_id=1, kind=LabelKind.NONE)
        backend.fail_rpc = True

        result = s.remove_label(25)
        assert result.counter == CounterOutcome(4, DIRECT)
        assert backend.sentences[25].label_count == 4
        assert ("fetch_sentence", 25) in backend.calls

    def test_history_recreate_outside_buffer(self, make_backend):
        backend = make_backend(25)
        s = AnnotationSession(backend, batch_size=10)
        s.load(1, TraversalMode.ALL)
        backend.sentences[25].label_count = 5
        backend.fail_rpc = True

        label = Label(sentence_id=25, property_id=1, kind=LabelKind.NONE, sentence_text="Sentence number 24 here .")
        draft = s.edit_label(label)
        draft.select_kind(LabelKind.PROPERTY)
        result = s.save(draft)

        assert result.created is True
        assert backend.sentences[25].label_count == 6
        assert 20 not in s.buffer


class TestAuthChange:
    def test_sign_out_clears_state(self, session):
        label_current(session, LabelKind.NONE)
        session.handle_auth_change(SIGNED_OUT, None)
        assert session.labeled_ids == set()
        assert session.total == 0
        assert len(session.buffer) == 0

    def test_sign_in_reloads(self, session, fake_backend):
        session.handle_auth_change(SIGNED_OUT, None)
        session.handle_auth_change(SIGNED_IN, object())
        assert session.total == 3
        assert session.current_sentence().id == 1
