#!/usr/bin/env python3
"""
orchestrator.py: Turn one captured or imported image into a stored scan.

Stages run strictly in order and the first failure ends the run:

    quota check -> compress -> upload -> create scan row -> merge + refresh

Each failure comes back as an IngestionResult tagged with its stage. Several
ingestions may run at once; they share the synchronizer's scan list and the
per-owner quota slots.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import (
    CompressionFailure,
    IngestionError,
    PersistenceFailure,
    QuotaExceeded,
    UploadFailure,
)
from .image_encoder import TARGET_BYTES, CompressedImage, ImageCompressor, ImageSource
from .models import Scan, SessionContext
from .synchronizer import AnalysisSynchronizer
from ..api.records import ScanRecordStore
from ..api.storage import UploadClient
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

FREE_SCAN_LIMIT = 3


@dataclass
class IngestionResult:
    """Outcome of one ingestion run."""
    scan: Optional[Scan] = None
    error: Optional[IngestionError] = None
    image_url: Optional[str] = None
    processing_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stage(self) -> Optional[str]:
        return self.error.stage if self.error else None

    @property
    def message(self) -> str:
        return str(self.error) if self.error else "ok"


class ScanIngestionOrchestrator:
    """
    Sequence compressor, uploader, record store and synchronizer for one image.

    `notify` is an optional coroutine function called with the scan language
    after the row is created; it runs in the background and its failures are
    only logged.
    """

    def __init__(
        self,
        compressor: ImageCompressor,
        uploader: UploadClient,
        store: ScanRecordStore,
        synchronizer: AnalysisSynchronizer,
        notify: Optional[Callable[[str], Awaitable[object]]] = None,
        free_scan_limit: int = FREE_SCAN_LIMIT,
        target_bytes: int = TARGET_BYTES,
        upload_attempts: int = 2,
        retry_wait: float = 1.0,
    ) -> None:
        self.compressor = compressor
        self.uploader = uploader
        self.store = store
        self.synchronizer = synchronizer
        self.notify = notify
        self.free_scan_limit = free_scan_limit
        self.target_bytes = target_bytes
        self.upload_attempts = max(1, upload_attempts)
        self.retry_wait = retry_wait
        self.on_stage: Optional[Callable[[str], None]] = None
        self._background: Set[asyncio.Task] = set()
        # per owner: ingestions past the quota check that have not saved their row yet
        self._reserved: Dict[str, int] = {}
        self._quota_locks: Dict[str, asyncio.Lock] = {}

    async def ingest(self, source: ImageSource, session: SessionContext) -> IngestionResult:
        start_time = time.time()
        result = IngestionResult()
        try:
            await self._reserve(session)
            try:
                image = await self._compress(source)
                result.image_url = await self._upload(image)
                result.scan = await self._persist(result.image_url, session)
            finally:
                self._release(session.owner_id)
        except IngestionError as err:
            logger.error("Ingestion failed at %s: %s", err.stage, err)
            result.error = err
            result.processing_time = time.time() - start_time
            return result

        self._schedule_notify(session.language)
        await self._merge(result.scan)
        result.processing_time = time.time() - start_time
        logger.info("Ingested scan %s in %.2fs", result.scan.id, result.processing_time)
        return result

    async def _reserve(self, session: SessionContext) -> None:
        """
        Check the free scan quota and hold a slot until the row is saved.

        Scans still in flight count against the limit, so concurrent
        ingestions for one owner cannot overshoot it.
        """
        self._stage("quota")
        owner = session.owner_id
        lock = self._quota_locks.setdefault(owner, asyncio.Lock())
        async with lock:
            try:
                count = await self.store.count_scans(owner)
            except PersistenceFailure as err:
                raise PersistenceFailure(f"quota check failed: {err.message}", code=err.code,
                                         rejected=err.rejected, stage="quota")
            used = count + self._reserved.get(owner, 0)
            if used >= self.free_scan_limit:
                logger.info("Owner %s has %d scans, free limit is %d", owner, used, self.free_scan_limit)
                raise QuotaExceeded(used, self.free_scan_limit)
            self._reserved[owner] = self._reserved.get(owner, 0) + 1

    def _release(self, owner: str) -> None:
        remaining = self._reserved.get(owner, 0) - 1
        if remaining > 0:
            self._reserved[owner] = remaining
        else:
            self._reserved.pop(owner, None)

    async def _compress(self, source: ImageSource) -> CompressedImage:
        self._stage("compress")
        image = await self.compressor.compress_async(source, self.target_bytes)
        if not image.b64:
            raise CompressionFailure("compression failed: encoder returned no data")
        if not image.within_target:
            logger.warning("Uploading best-effort image of ~%d bytes", image.estimated_size)
        return image

    async def _upload(self, image: CompressedImage) -> str:
        self._stage("upload")
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.upload_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(UploadFailure),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying upload (attempt %d)", attempt.retry_state.attempt_number)
                return await self.uploader.upload(image)

    async def _persist(self, image_url: str, session: SessionContext) -> Scan:
        self._stage("persist")
        try:
            return await self.store.create_scan(image_url, session.language, session.owner_id)
        except PersistenceFailure as err:
            raise PersistenceFailure(
                f"save failed: {err.message}; image already stored at {image_url}",
                code=err.code,
                rejected=err.rejected,
            )

    async def _merge(self, scan: Scan) -> None:
        self._stage("merge")
        self.synchronizer.add_optimistic(scan)
        try:
            await self.synchronizer.refresh()
        except PersistenceFailure as err:
            logger.warning("List refresh after ingest failed: %s", err)

    def _schedule_notify(self, language: str) -> None:
        if self.notify is None:
            return
        task = asyncio.get_running_loop().create_task(self._run_notify(language))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_notify(self, language: str) -> None:
        try:
            await self.notify(language)
        except Exception as err:
            logger.warning("Backend scan notification failed: %s", err)

    async def drain(self) -> None:
        """Wait for background notifications to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _stage(self, stage: str) -> None:
        logger.debug("Stage: %s", stage)
        if self.on_stage:
            self.on_stage(stage)
