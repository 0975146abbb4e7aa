"""
Core functionality for compressing, ingesting and synchronizing scans.
"""

from .models import Scan, ScanChange, ChangeKind, SessionContext, AnalysisState, LANGUAGES
from .errors import (
    DocuScanError,
    IngestionError,
    QuotaExceeded,
    CompressionFailure,
    UploadFailure,
    PersistenceFailure,
    ScanNotFound,
    ParseFailure,
)
from .image_encoder import ImageCompressor, CompressedImage
from .analysis import ParsedAnalysis, parse_analysis, extract_analysis, display_status
from .scan_list import ScanEvent, ScanListState, EventSource, apply_event
from .synchronizer import AnalysisSynchronizer
from .orchestrator import ScanIngestionOrchestrator, IngestionResult

__all__ = [
    "Scan",
    "ScanChange",
    "ChangeKind",
    "SessionContext",
    "AnalysisState",
    "LANGUAGES",
    "DocuScanError",
    "IngestionError",
    "QuotaExceeded",
    "CompressionFailure",
    "UploadFailure",
    "PersistenceFailure",
    "ScanNotFound",
    "ParseFailure",
    "ImageCompressor",
    "CompressedImage",
    "ParsedAnalysis",
    "parse_analysis",
    "extract_analysis",
    "display_status",
    "ScanEvent",
    "ScanListState",
    "EventSource",
    "apply_event",
    "AnalysisSynchronizer",
    "ScanIngestionOrchestrator",
    "IngestionResult",
]
