"""Shared fakes and helpers for the test suite."""
import io
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

from docuscan.api.base import ObjectStore, ScanDatabase, Subscription
from docuscan.core.errors import StoreError
from docuscan.core.models import Scan

BASE_TIME = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
OWNER = "user-1"


def analysis_payload(data: Optional[Dict[str, Any]] = None, fenced: bool = True) -> Dict[str, Any]:
    data = data or {"sender": "Belastingdienst", "summary_ua": "Tax notice", "urgency": "high"}
    text = json.dumps(data)
    if fenced:
        text = f"Here is the analysis:\n```json\n{text}\n```"
    return {"content": [{"text": text}]}


def make_scan(scan_id: str, minutes: int = 0, analysis=None, owner: str = OWNER, language: str = "uk") -> Scan:
    return Scan(
        id=scan_id,
        image_url=f"https://cdn.example/public/{scan_id}.jpeg",
        created_at=BASE_TIME + timedelta(minutes=minutes),
        language=language,
        user_id=owner,
        analysis=analysis,
    )


def make_image(width: int = 1600, height: int = 1200, noisy: bool = False) -> bytes:
    if noisy:
        img = Image.effect_noise((width, height), 100).convert("RGB")
    else:
        img = Image.new("RGB", (width, height), (200, 180, 160))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_next = 0
        self.put_calls = 0

    async def put(self, path, data, content_type):
        self.put_calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise StoreError("The resource already exists", code="409")
        if path in self.objects:
            raise StoreError("The resource already exists", code="409")
        assert content_type == "image/jpeg"
        self.objects[path] = data

    async def get_public_url(self, path):
        return f"https://cdn.example/letters/{path}"


class FakeSubscription(Subscription):
    def __init__(self, db, user_id):
        self.db = db
        self.user_id = user_id
        self.active = True

    async def unsubscribe(self):
        self.active = False
        self.db.subscriptions.remove(self)


class FakeScanDatabase(ScanDatabase):
    """In-memory scan table with call counters and a fake change feed."""

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.ids = itertools.count(1)
        self.calls: Dict[str, int] = {}
        self.select_calls: Dict[str, int] = {}
        self.fail: Dict[str, Exception] = {}
        self.subscriptions: List[FakeSubscription] = []
        self.handlers: Dict[FakeSubscription, Callable] = {}
        self.status_handlers: Dict[FakeSubscription, Callable] = {}

    def _call(self, name):
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.fail:
            raise self.fail[name]

    def add_row(self, scan: Scan) -> None:
        self.rows[scan.id] = scan.to_row()

    async def insert_scan(self, row):
        self._call("insert")
        stored = dict(row, id=f"scan-{next(self.ids)}", analysis=None)
        self.rows[stored["id"]] = stored
        return dict(stored)

    async def select_scans(self, user_id):
        self._call("select_scans")
        rows = [dict(r) for r in self.rows.values() if r["user_id"] == user_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows

    async def select_scan(self, scan_id):
        self.select_calls[scan_id] = self.select_calls.get(scan_id, 0) + 1
        self._call("select_scan")
        row = self.rows.get(scan_id)
        return dict(row) if row else None

    async def count_scans(self, user_id):
        self._call("count")
        return sum(1 for r in self.rows.values() if r["user_id"] == user_id)

    async def delete_scan(self, scan_id):
        self._call("delete")
        self.rows.pop(scan_id, None)

    async def subscribe(self, user_id, on_change, on_status=None):
        self._call("subscribe")
        sub = FakeSubscription(self, user_id)
        self.subscriptions.append(sub)
        self.handlers[sub] = on_change
        self.status_handlers[sub] = on_status
        if on_status:
            on_status("SUBSCRIBED", None)
        return sub

    def emit(self, kind: str, record: Optional[Dict[str, Any]] = None, old: Optional[Dict[str, Any]] = None):
        """Deliver a realtime-style payload to every active subscriber."""
        payload = {"data": {"type": kind, "record": record or {}, "old_record": old or {}}}
        for sub in list(self.subscriptions):
            self.handlers[sub](payload)

    def set_analysis(self, scan_id: str, analysis) -> Dict[str, Any]:
        self.rows[scan_id]["analysis"] = analysis
        return dict(self.rows[scan_id])


@pytest.fixture
def db():
    return FakeScanDatabase()


@pytest.fixture
def object_store():
    return FakeObjectStore()
