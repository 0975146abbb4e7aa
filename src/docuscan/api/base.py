"""
Capability interfaces for the storage backend.

The pipeline only talks to object storage and the scan table through these
abstract classes. ``supabase_backend`` provides the production
implementations; tests use in-memory ones.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional

# Raw change-feed payload as delivered by the backend.
RawChange = Mapping[str, Any]


class ObjectStore(ABC):
    """Abstract base class for object storage."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> None:
        """Store `data` under `path`.

        Raises:
            StoreError: If the store rejects the object (e.g. path already exists)
        """
        pass

    @abstractmethod
    async def get_public_url(self, path: str) -> str:
        """Return a durable public URL for `path`."""
        pass


class Subscription(ABC):
    """Handle for a live change-feed subscription."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        pass


class ScanDatabase(ABC):
    """Abstract base class for the scan table.

    Rows are plain dicts with the columns ``id``, ``image_url``, ``created_at``,
    ``language``, ``user_id`` and ``analysis``. Implementations raise
    ``StoreError`` when the database answers with an error and let transport
    exceptions propagate.
    """

    @abstractmethod
    async def insert_scan(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored (with server defaults filled in)."""
        pass

    @abstractmethod
    async def select_scans(self, user_id: str) -> List[Dict[str, Any]]:
        """Return the owner's rows ordered by created_at descending."""
        pass

    @abstractmethod
    async def select_scan(self, scan_id: str) -> Optional[Dict[str, Any]]:
        """Return one row, or None if it does not exist."""
        pass

    @abstractmethod
    async def count_scans(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def delete_scan(self, scan_id: str) -> None:
        pass

    @abstractmethod
    async def subscribe(
        self,
        user_id: str,
        on_change: Callable[[RawChange], None],
        on_status: Optional[Callable[[str, Optional[Exception]], None]] = None,
    ) -> Subscription:
        """Subscribe to INSERT/UPDATE/DELETE events for the owner's rows.

        `on_change` receives dicts with ``type`` (INSERT, UPDATE or DELETE),
        ``record`` (new row, if any) and ``old_record`` (previous row or at
        least its id). `on_status` receives channel status changes.
        """
        pass
