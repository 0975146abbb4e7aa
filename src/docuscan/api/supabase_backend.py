"""
Supabase implementations of the storage capabilities.

- SupabaseObjectStore: a public storage bucket (``letters`` by default)
- SupabaseScanDatabase: the ``scans`` table plus a realtime channel filtered
  on ``user_id``

PostgREST errors are re-raised as StoreError; transport errors propagate.
"""

import inspect
from typing import Any, Callable, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from ..core.errors import StoreError
from ..utils.log_utils import get_logger
from .base import ObjectStore, RawChange, ScanDatabase, Subscription

logger = get_logger(__name__)

SCAN_COLUMNS = "id, image_url, created_at, analysis, language, user_id"


def _store_error(err: APIError) -> StoreError:
    return StoreError(err.message or str(err), code=err.code)


class SupabaseObjectStore(ObjectStore):
    """Object storage backed by a Supabase bucket."""

    def __init__(self, client: AsyncClient, bucket: str = "letters"):
        self.client = client
        self.bucket = bucket

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        logger.debug("Uploading to bucket %r, path %s", self.bucket, path)
        await self.client.storage.from_(self.bucket).upload(
            path, data, {"content-type": content_type, "upsert": "false"}
        )

    async def get_public_url(self, path: str) -> str:
        url = self.client.storage.from_(self.bucket).get_public_url(path)
        if inspect.isawaitable(url):
            url = await url
        return url


class SupabaseSubscription(Subscription):
    def __init__(self, client: AsyncClient, channel):
        self.client = client
        self.channel = channel

    async def unsubscribe(self) -> None:
        await self.client.remove_channel(self.channel)


class SupabaseScanDatabase(ScanDatabase):
    """The scans table, queried through PostgREST."""

    def __init__(self, client: AsyncClient, table: str = "scans", schema: str = "public"):
        self.client = client
        self.table = table
        self.schema = schema

    async def insert_scan(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.table(self.table).insert(row).execute()
        except APIError as err:
            raise _store_error(err)
        if not resp.data:
            raise StoreError("insert returned no row")
        return resp.data[0]

    async def select_scans(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            resp = await (
                self.client.table(self.table)
                .select(SCAN_COLUMNS)
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except APIError as err:
            raise _store_error(err)
        return resp.data or []

    async def select_scan(self, scan_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await (
                self.client.table(self.table)
                .select(SCAN_COLUMNS)
                .eq("id", scan_id)
                .limit(1)
                .execute()
            )
        except APIError as err:
            raise _store_error(err)
        return resp.data[0] if resp.data else None

    async def count_scans(self, user_id: str) -> int:
        try:
            resp = await (
                self.client.table(self.table)
                .select("id", count="exact", head=True)
                .eq("user_id", user_id)
                .execute()
            )
        except APIError as err:
            raise _store_error(err)
        return resp.count or 0

    async def delete_scan(self, scan_id: str) -> None:
        try:
            await self.client.table(self.table).delete().eq("id", scan_id).execute()
        except APIError as err:
            raise _store_error(err)

    async def subscribe(
        self,
        user_id: str,
        on_change: Callable[[RawChange], None],
        on_status: Optional[Callable[[str, Optional[Exception]], None]] = None,
    ) -> Subscription:
        channel = self.client.channel(f"{self.table}-changes-{user_id}")
        channel.on_postgres_changes(
            "*",
            schema=self.schema,
            table=self.table,
            filter=f"user_id=eq.{user_id}",
            callback=on_change,
        )

        def status(state, err: Optional[Exception] = None) -> None:
            if on_status is not None:
                on_status(getattr(state, "value", str(state)), err)

        await channel.subscribe(status)
        logger.info("Subscribed to %s changes for owner %s", self.table, user_id)
        return SupabaseSubscription(self.client, channel)


async def connect(url: str, key: str) -> AsyncClient:
    """Create an async Supabase client."""
    return await acreate_client(url, key)
