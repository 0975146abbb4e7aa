"""
DocuScan

Client core for scanning official letters: compress, upload, store and wait
for the AI analysis to arrive.
"""

__version__ = "0.1.0"

from .core import (
    AnalysisSynchronizer,
    ImageCompressor,
    IngestionResult,
    Scan,
    ScanIngestionOrchestrator,
    SessionContext,
)
from .api import BackendClient, ScanRecordStore, UploadClient

__all__ = [
    "AnalysisSynchronizer",
    "ImageCompressor",
    "IngestionResult",
    "Scan",
    "ScanIngestionOrchestrator",
    "SessionContext",
    "BackendClient",
    "ScanRecordStore",
    "UploadClient",
]
