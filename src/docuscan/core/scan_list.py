"""
scan_list.py: Pure merge functions for the local scan list.

Every channel that knows something about a scan (optimistic insert after
create, push change feed, poll, full refetch, local delete) is expressed as a
tagged ScanEvent and folded into an immutable ScanListState with
`apply_event`. Nothing here touches I/O, so the merge rules can be tested in
isolation:

- upserts are keyed by id and kept ordered newest-first by created_at
- a present analysis is never replaced by an absent one
- merging a scan that is already there unchanged returns the same state object
- deleted ids are tombstoned and never come back
- a snapshot only drops local entries that were last touched before it was requested
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .models import AnalysisState, Scan


class EventSource(str, Enum):
    OPTIMISTIC = "optimistic"
    PUSH = "push"
    POLL = "poll"
    REFETCH = "refetch"
    LOCAL = "local"


class EventKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class ScanEvent:
    source: EventSource
    kind: EventKind
    scan: Optional[Scan] = None
    scan_id: Optional[str] = None
    scans: Tuple[Scan, ...] = ()
    issued_at: int = 0

    @classmethod
    def upsert(cls, source: EventSource, scan: Scan) -> "ScanEvent":
        return cls(source=source, kind=EventKind.UPSERT, scan=scan, scan_id=scan.id)

    @classmethod
    def delete(cls, source: EventSource, scan_id: str) -> "ScanEvent":
        return cls(source=source, kind=EventKind.DELETE, scan_id=scan_id)

    @classmethod
    def snapshot(cls, scans: Iterable[Scan], issued_at: int) -> "ScanEvent":
        """Full list as fetched; `issued_at` is the state seq when the fetch started."""
        return cls(source=EventSource.REFETCH, kind=EventKind.SNAPSHOT,
                   scans=tuple(scans), issued_at=issued_at)


@dataclass(frozen=True)
class ScanListState:
    scans: Tuple[Scan, ...] = ()
    selected_id: Optional[str] = None
    # ids that reached ANALYZED this session; never shrinks
    analyzed: FrozenSet[str] = frozenset()
    # tombstones for deleted ids
    removed: FrozenSet[str] = frozenset()
    seq: int = 0
    # id -> seq of the last event that changed it; treat as read-only
    touched: Dict[str, int] = field(default_factory=dict, compare=False)

    def get(self, scan_id: str) -> Optional[Scan]:
        for scan in self.scans:
            if scan.id == scan_id:
                return scan
        return None

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(scan.id for scan in self.scans)

    @property
    def selected(self) -> Optional[Scan]:
        if self.selected_id is None:
            return None
        return self.get(self.selected_id)

    def analysis_state(self, scan_id: str) -> AnalysisState:
        if scan_id in self.analyzed:
            return AnalysisState.ANALYZED
        return AnalysisState.UNANALYZED


def merge_scan(existing: Scan, incoming: Scan) -> Scan:
    """
    Last-writer-wins merge of two versions of the same scan.

    Returns `existing` itself when nothing would change, so callers can detect
    a no-op with an identity check.
    """
    merged = incoming
    if existing.has_analysis and not incoming.has_analysis:
        merged = replace(incoming, analysis=existing.analysis)
    if merged == existing:
        return existing
    return merged


def _insert_sorted(scans: Tuple[Scan, ...], scan: Scan) -> Tuple[Scan, ...]:
    for index, current in enumerate(scans):
        if current.created_at < scan.created_at:
            return scans[:index] + (scan,) + scans[index:]
    return scans + (scan,)


def _without(scans: Tuple[Scan, ...], scan_id: str) -> Tuple[Scan, ...]:
    return tuple(scan for scan in scans if scan.id != scan_id)


def _upsert(state: ScanListState, scan: Scan) -> ScanListState:
    if scan.id in state.removed:
        return state
    existing = state.get(scan.id)
    if existing is None:
        merged = scan
        scans = _insert_sorted(state.scans, scan)
    else:
        merged = merge_scan(existing, scan)
        if merged is existing:
            return state
        scans = _insert_sorted(_without(state.scans, scan.id), merged)

    seq = state.seq + 1
    analyzed = state.analyzed | {merged.id} if merged.has_analysis else state.analyzed
    touched = dict(state.touched)
    touched[merged.id] = seq
    return replace(state, scans=scans, analyzed=analyzed, seq=seq, touched=touched)


def _delete(state: ScanListState, scan_id: str) -> ScanListState:
    if scan_id in state.removed and state.get(scan_id) is None:
        return state
    seq = state.seq + 1
    touched = dict(state.touched)
    touched[scan_id] = seq
    return replace(
        state,
        scans=_without(state.scans, scan_id),
        selected_id=None if state.selected_id == scan_id else state.selected_id,
        removed=state.removed | {scan_id},
        seq=seq,
        touched=touched,
    )


def _snapshot(state: ScanListState, fetched: Tuple[Scan, ...], issued_at: int) -> ScanListState:
    merged = {}
    for scan in fetched:
        if scan.id in state.removed:
            continue
        local = state.get(scan.id)
        if local is None:
            merged[scan.id] = scan
        elif state.touched.get(scan.id, 0) > issued_at:
            # changed locally while the fetch was in flight; local copy is newer
            merged[scan.id] = merge_scan(scan, local)
        else:
            merged[scan.id] = merge_scan(local, scan)

    for local in state.scans:
        if local.id not in merged and state.touched.get(local.id, 0) > issued_at:
            merged[local.id] = local

    scans = tuple(sorted(merged.values(), key=lambda s: s.created_at, reverse=True))

    selected_id = state.selected_id if state.selected_id in merged else None
    if scans == state.scans and selected_id == state.selected_id:
        return state
    analyzed = state.analyzed | {scan.id for scan in scans if scan.has_analysis}
    return replace(state, scans=scans, selected_id=selected_id, analyzed=analyzed, seq=state.seq + 1)


def apply_event(state: ScanListState, event: ScanEvent) -> ScanListState:
    """Fold one event into the state. Returns `state` unchanged for no-ops."""
    if event.kind is EventKind.UPSERT:
        if event.scan is None:
            raise ValueError("upsert event without scan")
        return _upsert(state, event.scan)
    if event.kind is EventKind.DELETE:
        if not event.scan_id:
            raise ValueError("delete event without scan_id")
        return _delete(state, event.scan_id)
    if event.kind is EventKind.SNAPSHOT:
        return _snapshot(state, event.scans, event.issued_at)
    raise ValueError(f"Unknown event kind: {event.kind}")


def select(state: ScanListState, scan_id: Optional[str]) -> ScanListState:
    """Make `scan_id` the selected scan (None deselects)."""
    if scan_id == state.selected_id:
        return state
    if scan_id is not None and state.get(scan_id) is None:
        raise KeyError(scan_id)
    return replace(state, selected_id=scan_id)
