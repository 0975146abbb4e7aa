"""
Integrations with the storage backend and the REST backend.

The pipeline depends only on the abstract capabilities in ``base``; the
Supabase adapters are the production implementations.
"""

from .base import ObjectStore, ScanDatabase, Subscription
from .records import ScanRecordStore, parse_change
from .storage import UploadClient
from .backend import BackendClient

__all__ = [
    "ObjectStore",
    "ScanDatabase",
    "Subscription",
    "ScanRecordStore",
    "parse_change",
    "UploadClient",
    "BackendClient",
]
