"""
Typed wrapper around the scan table.

Shapes requests, turns rows into Scan objects and surfaces failures as
PersistenceFailure (store rejected vs. network exception) or ScanNotFound.
No business rules live here.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import PersistenceFailure, ScanNotFound, StoreError, SubscriptionError
from ..core.models import ChangeKind, Scan, ScanChange, validate_language
from ..utils.log_utils import get_logger
from .base import RawChange, ScanDatabase, Subscription

logger = get_logger(__name__)


def _failure(action: str, err: Exception) -> PersistenceFailure:
    if isinstance(err, StoreError):
        return PersistenceFailure(f"{action} rejected: {err.message}", code=err.code, rejected=True)
    return PersistenceFailure(f"{action} failed: {err}", rejected=False)


def _to_scan(action: str, row: Any) -> Scan:
    try:
        return Scan.from_row(row)
    except (ValueError, TypeError, AttributeError) as err:
        raise PersistenceFailure(f"{action} returned a malformed row: {err}", rejected=True)


def parse_change(payload: RawChange) -> Optional[ScanChange]:
    """Translate a raw change-feed payload into a ScanChange (None if unusable)."""
    data = payload.get("data", payload)
    kind_name = str(data.get("type") or data.get("eventType") or "").upper()
    try:
        kind = ChangeKind(kind_name)
    except ValueError:
        logger.warning("Ignoring change with unknown type %r", kind_name)
        return None

    if kind is ChangeKind.DELETE:
        old = data.get("old_record") or data.get("old") or {}
        scan_id = old.get("id")
        if not scan_id:
            logger.warning("Ignoring DELETE change without id")
            return None
        return ScanChange(kind=kind, scan_id=str(scan_id))

    record = data.get("record") or data.get("new") or {}
    try:
        scan = Scan.from_row(record)
    except ValueError as err:
        logger.warning("Ignoring malformed %s change: %s", kind.value, err)
        return None
    return ScanChange(kind=kind, scan_id=scan.id, scan=scan)


class ScanRecordStore:
    """Create, read, delete and watch scan records for one database."""

    def __init__(self, db: ScanDatabase) -> None:
        self.db = db

    async def create_scan(self, image_url: str, language: str, owner_id: str) -> Scan:
        validate_language(language)
        row: Dict[str, Any] = {
            "image_url": image_url,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "language": language,
            "user_id": owner_id,
        }
        logger.debug("Inserting scan row for owner %s (language=%s)", owner_id, language)
        try:
            stored = await self.db.insert_scan(row)
        except Exception as err:
            raise _failure("insert", err)
        if not stored:
            raise PersistenceFailure("insert returned no row", rejected=True)
        scan = _to_scan("insert", stored)
        if scan.language != language:
            logger.warning("Scan %s stored with language %r, expected %r", scan.id, scan.language, language)
        logger.info("Created scan %s", scan.id)
        return scan

    async def get_scan(self, scan_id: str) -> Scan:
        try:
            row = await self.db.select_scan(scan_id)
        except Exception as err:
            raise _failure("select", err)
        if row is None:
            raise ScanNotFound(scan_id)
        return _to_scan("select", row)

    async def list_scans(self, owner_id: str) -> List[Scan]:
        try:
            rows = await self.db.select_scans(owner_id)
        except Exception as err:
            raise _failure("select", err)
        scans = []
        for row in rows:
            try:
                scans.append(_to_scan("select", row))
            except PersistenceFailure as err:
                logger.warning("Skipping scan row: %s", err)
        scans.sort(key=lambda s: s.created_at, reverse=True)
        logger.debug("Fetched %d scans for owner %s", len(scans), owner_id)
        return scans

    async def count_scans(self, owner_id: str) -> int:
        try:
            return await self.db.count_scans(owner_id)
        except Exception as err:
            raise _failure("count", err)

    async def delete_scan(self, scan_id: str) -> None:
        try:
            await self.db.delete_scan(scan_id)
        except Exception as err:
            raise _failure("delete", err)
        logger.info("Deleted scan %s", scan_id)

    async def subscribe_changes(
        self,
        owner_id: str,
        on_event: Callable[[ScanChange], None],
        on_error: Optional[Callable[[SubscriptionError], None]] = None,
    ) -> Subscription:
        """Deliver parsed ScanChange events for the owner's scans to `on_event`."""

        def handle(payload: RawChange) -> None:
            change = parse_change(payload)
            if change is not None:
                on_event(change)

        def status(state: str, err: Optional[Exception]) -> None:
            logger.debug("Subscription for %s: %s", owner_id, state)
            if err is not None or state in ("CHANNEL_ERROR", "TIMED_OUT"):
                error = SubscriptionError(f"change feed {state}: {err}" if err else f"change feed {state}")
                logger.warning("%s", error)
                if on_error is not None:
                    on_error(error)

        try:
            return await self.db.subscribe(owner_id, handle, status)
        except Exception as err:
            raise _failure("subscribe", err)
