"""
Error taxonomy for the ingestion pipeline and the analysis channels.

Ingestion errors carry the stage that failed so callers can show a specific
message. Channel errors (poll, subscription) are only ever logged by the
synchronizer; they exist so log records name the failure kind.
"""

from typing import Optional


class DocuScanError(Exception):
    """Base class for all package errors."""


class IngestionError(DocuScanError):
    """A stage of the ingestion pipeline failed."""

    stage = "ingest"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class QuotaExceeded(IngestionError):
    stage = "quota"

    def __init__(self, count: int, limit: int):
        super().__init__(f"free scan limit reached ({count} of {limit} used)")
        self.count = count
        self.limit = limit


class CompressionFailure(IngestionError):
    stage = "compress"


class UploadFailure(IngestionError):
    stage = "upload"


class PersistenceFailure(IngestionError):
    """
    The scan table refused a request or could not be reached.

    ``rejected`` is True when the store answered with an error (constraint,
    permission, validation) and False when the request never got an answer.
    """

    stage = "persist"

    def __init__(self, message: str, code: Optional[str] = None, rejected: bool = True,
                 stage: Optional[str] = None):
        super().__init__(message, stage)
        self.code = code
        self.rejected = rejected

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} (code {self.code})"
        return self.message


class ScanNotFound(DocuScanError):
    def __init__(self, scan_id: str):
        super().__init__(f"Scan {scan_id} not found")
        self.scan_id = scan_id


class StoreError(DocuScanError):
    """Raised by storage/database adapters when the backend answers with an error."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class SubscriptionError(DocuScanError):
    """The change feed reported an error; the channel reconnects on its own."""


class PollError(DocuScanError):
    """A single poll tick failed; the next tick retries."""


class ParseFailure(DocuScanError):
    """An analysis payload is present but holds no valid structured data."""


class BackendError(DocuScanError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
