"""
Blob Uploader
Writes an image payload at a freshly generated unique path and returns its locator.
"""

import asyncio
import logging
import re
import threading
import time
import uuid
from typing import Optional, Tuple

from avatargen.core.config import settings
from avatargen.core.exceptions import TransferError
from avatargen.services.storage import StorageService

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


class _MonotonicClock:
    """Millisecond timestamps that never repeat or go backwards within the process."""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now = int(time.time() * 1000)
            self._last = now if now > self._last else self._last + 1
            return self._last


_clock = _MonotonicClock()


class BlobUploader:
    """Uploads source images to the blob store."""

    def __init__(
        self,
        storage: StorageService,
        namespace: Optional[str] = None,
        default_owner: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.storage = storage
        self.namespace = namespace or settings.UPLOAD_NAMESPACE
        self.default_owner = default_owner or settings.DEFAULT_OWNER_ID
        self.timeout = settings.UPLOAD_TIMEOUT if timeout is None else timeout

    def build_path(self, content_type: str, path_hint: Optional[str] = None) -> str:
        """``<namespace>/<owner>/<timestamp>_<random>.<ext>``"""
        owner = _SEGMENT_RE.sub("-", path_hint or self.default_owner).strip("-.") or self.default_owner
        ext = EXTENSIONS.get((content_type or "").lower(), "bin")
        return f"{self.namespace}/{owner}/{_clock.next()}_{uuid.uuid4().hex[:12]}.{ext}"

    async def upload(
        self,
        payload: bytes,
        content_type: str = "image/jpeg",
        path_hint: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Upload ``payload`` and return ``(locator, path)``.

        Raises:
            TransferError: the write failed, timed out, or did not verify
        """
        if not payload:
            raise TransferError("Empty image payload")

        path = self.build_path(content_type, path_hint)
        logger.info(f"[Uploader] Uploading {len(payload)} bytes to {path}")

        try:
            result = await asyncio.wait_for(
                self.storage.put(path, payload, content_type),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransferError(f"Upload timed out after {self.timeout:.0f}s", path=path, state="timeout") from e
        except TransferError:
            raise
        except Exception as e:
            raise TransferError(f"Upload failed: {e}", path=path, state="error") from e

        if result.state != "success":
            raise TransferError(f"Upload failed with state: {result.state}", path=path, state=result.state)
        if result.bytes_transferred != len(payload):
            raise TransferError(
                f"Upload incomplete: {result.bytes_transferred}/{len(payload)} bytes",
                path=path,
                state="incomplete",
            )

        locator = self.storage.get_public_url(path)
        logger.info(f"[Uploader] Upload verified: {locator}")
        return locator, path
