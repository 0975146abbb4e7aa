"""
Upload compressed letter images to object storage.
"""

import asyncio
import secrets
import time
from typing import Callable, Optional

from ..core.errors import UploadFailure
from ..core.image_encoder import CompressedImage
from ..utils.log_utils import get_logger
from .base import ObjectStore

logger = get_logger(__name__)

PUBLIC_PREFIX = "public"
CONTENT_TYPE = "image/jpeg"


class UploadClient:
    """Push compressed images to an ObjectStore and hand back their public URL.

    Failures are reported as UploadFailure and never retried here; the
    ingestion orchestrator owns the retry policy.
    """

    def __init__(
        self,
        store: ObjectStore,
        prefix: str = PUBLIC_PREFIX,
        timeout: Optional[float] = 30.0,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self.store = store
        self.prefix = prefix.strip("/")
        self.timeout = timeout
        self._clock = clock

    def make_object_key(self) -> str:
        """Timestamp-derived key: ``<prefix>/<microseconds>-<random>.jpeg``."""
        micros = self._clock() // 1000
        return f"{self.prefix}/{micros}-{secrets.token_hex(2)}.jpeg"

    async def upload(self, image: CompressedImage) -> str:
        """
        Upload `image` and return its public URL.

        Raises:
            UploadFailure: If the store rejects the object, the request fails,
                or it does not finish within the timeout.
        """
        path = self.make_object_key()
        logger.info("Uploading %d bytes to %s", image.estimated_size, path)
        try:
            await asyncio.wait_for(self.store.put(path, image.data, CONTENT_TYPE), self.timeout)
        except asyncio.TimeoutError:
            logger.error("Upload of %s timed out after %ss", path, self.timeout)
            raise UploadFailure(f"upload failed: timed out after {self.timeout}s")
        except Exception as err:
            logger.error("Upload of %s failed: %s", path, err)
            raise UploadFailure(f"upload failed: {err}")
        logger.debug("Upload of %s complete", path)
        return await self._public_url(path)

    async def _public_url(self, path: str) -> str:
        try:
            url = await self.store.get_public_url(path)
        except Exception as err:
            logger.error("Could not resolve public URL for %s: %s", path, err)
            raise UploadFailure(f"upload failed: no public URL for {path}: {err}")
        if not url:
            raise UploadFailure(f"upload failed: empty public URL for {path}")
        return url
