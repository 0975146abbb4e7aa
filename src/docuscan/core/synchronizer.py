"""
synchronizer.py: Keep the local scan list in step with the backend.

Three channels report on a scan's analysis:

- optimistic inserts right after a scan row is created
- the push change feed for the owner's rows
- a poll loop that re-fetches the selected scan while it has no analysis

All of them are turned into ScanEvents and folded through the pure reducer in
``scan_list``. The synchronizer only holds the current state, runs the poll
task and fires callbacks when something observable changed.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from .errors import PersistenceFailure, PollError, ScanNotFound, SubscriptionError
from .models import AnalysisState, ChangeKind, Scan, ScanChange, SessionContext
from .scan_list import EventSource, ScanEvent, ScanListState, apply_event, select
from ..api.base import Subscription
from ..api.records import ScanRecordStore
from ..utils.log_utils import get_logger

logger = get_logger(__name__)


class AnalysisSynchronizer:
    """
    Merge optimistic, push and poll updates into one ScanListState.

    Callbacks:
        on_change(state): the state changed in an observable way
        on_analyzed(scan): a scan known without analysis just received one;
            fires at most once per scan id per session
    """

    def __init__(
        self,
        store: ScanRecordStore,
        session: SessionContext,
        poll_interval: float = 5.0,
        poll_timeout: Optional[float] = 10.0,
    ) -> None:
        self.store = store
        self.session = session
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.on_change: Optional[Callable[[ScanListState], None]] = None
        self.on_analyzed: Optional[Callable[[Scan], None]] = None
        self._state = ScanListState()
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_id: Optional[str] = None
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        # bumped on every owner switch
        self._generation = 0

    @property
    def state(self) -> ScanListState:
        return self._state

    @property
    def scans(self) -> List[Scan]:
        return list(self._state.scans)

    @property
    def selected(self) -> Optional[Scan]:
        return self._state.selected

    @property
    def polling_id(self) -> Optional[str]:
        """Id of the scan currently being polled, if any."""
        return self._poll_id

    def analysis_state(self, scan_id: str) -> AnalysisState:
        return self._state.analysis_state(scan_id)

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Load the owner's scans and open the push subscription."""
        logger.info("Starting synchronizer for owner %s", self.session.owner_id)
        try:
            await self.refresh()
        except PersistenceFailure as err:
            logger.warning("Initial scan list fetch failed: %s", err)
        self._subscription = await self.store.subscribe_changes(
            self.session.owner_id, self.handle_change, self._on_subscription_error
        )

    async def stop(self) -> None:
        """Stop polling and tear down the push subscription."""
        await self._cancel_poll()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.unsubscribe()
            except Exception as err:
                logger.warning("Failed to unsubscribe cleanly: %s", err)
        for futures in self._waiters.values():
            for future in futures:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        logger.info("Synchronizer for owner %s stopped", self.session.owner_id)

    async def set_session(self, session: SessionContext) -> None:
        """Switch owner: drop all local state, refetch and resubscribe."""
        if session.owner_id == self.session.owner_id:
            self.session = session
            return
        await self.stop()
        self.session = session
        self._generation += 1
        self._commit(self._state, ScanListState())
        await self.start()

    # -- channels --------------------------------------------------------

    async def refresh(self) -> ScanListState:
        """Full refetch of the owner's scans."""
        owner_id, generation = self.session.owner_id, self._generation
        issued_at = self._state.seq
        scans = await self.store.list_scans(owner_id)
        if generation != self._generation:
            logger.debug("Dropping refetch for previous owner %s", owner_id)
            return self._state
        return self.dispatch(ScanEvent.snapshot(scans, issued_at))

    def add_optimistic(self, scan: Scan) -> ScanListState:
        """Merge a freshly created scan before any channel confirms it."""
        return self.dispatch(ScanEvent.upsert(EventSource.OPTIMISTIC, scan))

    def handle_change(self, change: ScanChange) -> None:
        """Push channel callback. Errors are logged, never raised to the feed."""
        try:
            if change.kind is ChangeKind.DELETE:
                self.dispatch(ScanEvent.delete(EventSource.PUSH, change.scan_id))
                return
            scan = change.scan
            if scan is None:
                logger.warning("Ignoring %s change without a record", change.kind.value)
                return
            if scan.user_id and scan.user_id != self.session.owner_id:
                logger.warning("Ignoring change for scan %s owned by someone else", scan.id)
                return
            self.dispatch(ScanEvent.upsert(EventSource.PUSH, scan))
        except Exception:
            logger.exception("Failed to apply %s change for scan %s", change.kind.value, change.scan_id)

    def _on_subscription_error(self, error: SubscriptionError) -> None:
        # the realtime client reconnects by itself; nothing to undo locally
        logger.warning("Change feed trouble for owner %s: %s", self.session.owner_id, error)

    async def delete_scan(self, scan_id: str) -> None:
        """Delete through the store, then drop the scan locally."""
        await self.store.delete_scan(scan_id)
        self.dispatch(ScanEvent.delete(EventSource.LOCAL, scan_id))

    # -- selection -------------------------------------------------------

    def select(self, scan_id: str) -> Scan:
        """
        Select a scan for the detail view. Polling starts if it has no analysis.

        Raises:
            KeyError: if the scan is not in the local list.
        """
        old = self._state
        self._commit(old, select(old, scan_id))
        return self._state.selected

    def deselect(self) -> None:
        old = self._state
        self._commit(old, select(old, None))

    async def wait_for_analysis(self, scan_id: str, timeout: Optional[float] = None) -> Scan:
        """
        Wait until `scan_id` is ANALYZED and return it.

        Raises:
            ScanNotFound: if the scan is deleted or dropped from the list first.
        """
        if scan_id in self._state.removed:
            raise ScanNotFound(scan_id)
        scan = self._state.get(scan_id)
        if scan is not None and scan.has_analysis:
            return scan
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(scan_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            waiters = self._waiters.get(scan_id, [])
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(scan_id, None)

    # -- core ------------------------------------------------------------

    def dispatch(self, event: ScanEvent) -> ScanListState:
        """Apply one event; no-ops leave state and callbacks untouched."""
        old = self._state
        new = apply_event(old, event)
        if new is old:
            logger.debug("No-op %s %s for %s", event.source.value, event.kind.value, event.scan_id or "list")
            return old
        logger.debug("Applied %s %s for %s", event.source.value, event.kind.value, event.scan_id or "list")
        self._commit(old, new)
        return new

    def _commit(self, old: ScanListState, new: ScanListState) -> None:
        if new is old:
            return
        self._state = new

        for scan_id in new.analyzed - old.analyzed:
            scan = new.get(scan_id)
            if scan is None:
                continue
            for future in self._waiters.pop(scan_id, []):
                if not future.done():
                    future.set_result(scan)
            if old.get(scan_id) is not None:
                logger.info("Analysis arrived for scan %s", scan_id)
                self._notify(self.on_analyzed, scan)

        for scan_id in set(old.ids) - set(new.ids):
            for future in self._waiters.pop(scan_id, []):
                if not future.done():
                    future.set_exception(ScanNotFound(scan_id))

        self._sync_poll()
        self._notify(self.on_change, new)

    def _notify(self, callback, arg) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("Synchronizer callback %r failed", callback)

    # -- polling ---------------------------------------------------------

    def _wanted_poll_id(self) -> Optional[str]:
        selected = self._state.selected
        if selected is None or selected.has_analysis:
            return None
        return selected.id

    def _sync_poll(self) -> None:
        wanted = self._wanted_poll_id()
        if wanted == self._poll_id:
            return
        self._stop_poll_task()
        if wanted is not None:
            self._poll_id = wanted
            self._poll_task = asyncio.get_running_loop().create_task(self._poll(wanted))

    def _stop_poll_task(self) -> None:
        task, self._poll_task = self._poll_task, None
        if self._poll_id is not None:
            logger.info("Stopping poll for scan %s", self._poll_id)
        self._poll_id = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _cancel_poll(self) -> None:
        task = self._poll_task
        self._stop_poll_task()
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def _poll(self, scan_id: str) -> None:
        logger.info("Polling scan %s every %ss", scan_id, self.poll_interval)
        try:
            while True:
                await asyncio.sleep(self.poll_interval)
                try:
                    scan = await asyncio.wait_for(self.store.get_scan(scan_id), self.poll_timeout)
                except ScanNotFound:
                    logger.warning("Scan %s disappeared while polling", scan_id)
                    return
                except Exception as err:
                    reason = str(err) or type(err).__name__
                    logger.warning("%s", PollError(f"Poll for scan {scan_id} failed: {reason}"))
                    continue
                if scan.has_analysis:
                    self.dispatch(ScanEvent.upsert(EventSource.POLL, scan))
                    return
                logger.debug("Scan %s still unanalyzed", scan_id)
        finally:
            if self._poll_task is asyncio.current_task():
                self._poll_task = None
                self._poll_id = None
