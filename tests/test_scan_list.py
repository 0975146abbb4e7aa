import itertools
from dataclasses import replace

import pytest

from docuscan.core.models import AnalysisState
from docuscan.core.scan_list import (
    EventSource,
    ScanEvent,
    ScanListState,
    apply_event,
    merge_scan,
    select,
)

from conftest import analysis_payload, make_scan


def fold(events, state=None):
    state = state or ScanListState()
    for event in events:
        state = apply_event(state, event)
    return state


def upsert(scan, source=EventSource.PUSH):
    return ScanEvent.upsert(source, scan)


def test_upserts_keep_newest_first_order():
    state = fold([
        upsert(make_scan("a", minutes=1)),
        upsert(make_scan("c", minutes=3)),
        upsert(make_scan("b", minutes=2)),
    ])
    assert state.ids == ("c", "b", "a")


def test_optimistic_insert_then_push_update_never_duplicates():
    scan = make_scan("s1")
    analyzed = replace(scan, analysis=analysis_payload())

    state = fold([
        upsert(scan, EventSource.OPTIMISTIC),
        upsert(analyzed, EventSource.PUSH),
    ])

    assert state.ids == ("s1",)
    assert state.get("s1").analysis == analyzed.analysis


def test_identical_merge_is_a_noop():
    scan = make_scan("s1", analysis=analysis_payload())
    state = fold([upsert(scan)])

    assert apply_event(state, upsert(scan, EventSource.POLL)) is state
    # equal content in a different object is still a no-op
    copy = replace(scan, analysis=dict(scan.analysis))
    assert apply_event(state, upsert(copy)) is state


def test_present_analysis_never_reverts_to_absent():
    scan = make_scan("s1")
    analyzed = replace(scan, analysis=analysis_payload())
    state = fold([upsert(analyzed), upsert(scan, EventSource.REFETCH)])

    assert state.get("s1").analysis == analyzed.analysis
    assert state.analysis_state("s1") is AnalysisState.ANALYZED


def test_last_writer_wins_for_other_fields():
    scan = make_scan("s1", analysis=analysis_payload({"sender": "old"}))
    newer = replace(scan, analysis=analysis_payload({"sender": "new"}), image_url="https://cdn/x.jpeg")
    state = fold([upsert(scan), upsert(newer)])
    assert state.get("s1") == newer


def test_merge_scan_returns_existing_on_noop():
    scan = make_scan("s1", analysis=analysis_payload())
    assert merge_scan(scan, replace(scan, analysis=None)) is scan


@pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
def test_any_push_poll_interleaving_reaches_analyzed_once(order):
    scan = make_scan("s1")
    analyzed = replace(scan, analysis=analysis_payload())
    events = [
        upsert(scan, EventSource.PUSH),
        upsert(analyzed, EventSource.PUSH),
        upsert(analyzed, EventSource.POLL),
        upsert(scan, EventSource.POLL),
    ]
    state = fold([upsert(scan, EventSource.OPTIMISTIC)])
    transitions = 0
    for index in order:
        new = apply_event(state, events[index])
        transitions += len(new.analyzed - state.analyzed)
        state = new

    assert transitions == 1
    assert state.ids == ("s1",)
    assert state.get("s1").analysis == analyzed.analysis


def test_delete_removes_and_clears_selection():
    state = fold([upsert(make_scan("a")), upsert(make_scan("b", minutes=1))])
    state = select(state, "a")

    state = apply_event(state, ScanEvent.delete(EventSource.PUSH, "a"))

    assert state.ids == ("b",)
    assert state.selected_id is None


def test_delete_of_other_scan_keeps_selection():
    state = select(fold([upsert(make_scan("a")), upsert(make_scan("b"))]), "a")
    state = apply_event(state, ScanEvent.delete(EventSource.PUSH, "b"))
    assert state.selected_id == "a"


def test_deleted_scan_is_not_resurrected_by_late_events():
    scan = make_scan("a")
    state = fold([upsert(scan), ScanEvent.delete(EventSource.LOCAL, "a")])

    assert apply_event(state, upsert(scan, EventSource.POLL)) is state
    assert apply_event(state, ScanEvent.snapshot([scan], issued_at=0)).ids == ()
    assert apply_event(state, ScanEvent.delete(EventSource.PUSH, "a")) is state


def test_snapshot_replaces_membership():
    state = fold([upsert(make_scan("old"))])
    issued = state.seq

    state = apply_event(state, ScanEvent.snapshot([make_scan("a"), make_scan("b", minutes=5)], issued))

    assert state.ids == ("b", "a")


def test_snapshot_keeps_entries_added_after_it_was_issued():
    state = ScanListState()
    issued = state.seq
    state = apply_event(state, upsert(make_scan("fresh", minutes=9), EventSource.OPTIMISTIC))

    state = apply_event(state, ScanEvent.snapshot([make_scan("a")], issued))

    assert state.ids == ("fresh", "a")


def test_snapshot_does_not_override_newer_local_analysis():
    scan = make_scan("a")
    state = fold([upsert(scan)])
    issued = state.seq
    state = apply_event(state, upsert(replace(scan, analysis=analysis_payload())))

    after = apply_event(state, ScanEvent.snapshot([scan], issued))

    assert after.get("a").has_analysis


def test_snapshot_drops_selection_of_vanished_scan():
    state = select(fold([upsert(make_scan("a")), upsert(make_scan("b"))]), "a")
    state = apply_event(state, ScanEvent.snapshot([make_scan("b")], state.seq))
    assert state.selected_id is None


def test_unchanged_snapshot_is_a_noop():
    state = fold([upsert(make_scan("a")), upsert(make_scan("b", minutes=1))])
    snapshot = ScanEvent.snapshot([make_scan("b", minutes=1), make_scan("a")], state.seq)
    assert apply_event(state, snapshot) is state


def test_select_unknown_scan_raises():
    with pytest.raises(KeyError):
        select(ScanListState(), "missing")


def test_select_and_deselect():
    state = fold([upsert(make_scan("a"))])
    selected = select(state, "a")
    assert selected.selected.id == "a"
    assert select(selected, None).selected is None
    assert select(selected, "a") is selected
