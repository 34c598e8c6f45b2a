"""
Storage Service
Blob store for source images - supports Google Cloud Storage, S3, and local filesystem.

Every write is read back before it is reported as ``success``; callers only
get a locator for data the backend has confirmed.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from avatargen.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    """Completion state of a single blob write."""
    path: str
    state: str  # "success" or the backend's failure state
    bytes_transferred: int = 0


class StorageService:
    """Service for file storage operations."""

    def __init__(
        self,
        use_gcs: Optional[bool] = None,
        use_local: Optional[bool] = None,
        local_path: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        # Priority: GCS > Local > S3
        self.use_gcs = settings.USE_GCS if use_gcs is None else use_gcs
        local = settings.USE_LOCAL_STORAGE if use_local is None else use_local
        self.use_local = local and not self.use_gcs
        self.public_base_url = (public_base_url or settings.API_BASE_URL).rstrip("/")

        if self.use_gcs:
            # Google Cloud Storage
            from google.cloud import storage
            self.gcs_client = storage.Client(project=settings.GCP_PROJECT_ID or None)
            self.bucket_uploads = self.gcs_client.bucket(settings.GCS_BUCKET_UPLOADS)
            logger.info(f"[Storage] Using Google Cloud Storage: {settings.GCS_BUCKET_UPLOADS}")

        elif self.use_local:
            self.base_path = Path(local_path or settings.LOCAL_STORAGE_PATH)
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"[Storage] Using local storage: {self.base_path}")

        else:
            # S3 fallback
            import boto3
            from botocore.config import Config
            self.s3 = boto3.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT or None,
                aws_access_key_id=settings.S3_ACCESS_KEY or None,
                aws_secret_access_key=settings.S3_SECRET_KEY or None,
                region_name=settings.S3_REGION,
                config=Config(signature_version="s3v4")
            )
            self.bucket = settings.S3_BUCKET
            logger.info(f"[Storage] Using S3: {self.bucket}")

    @property
    def backend_name(self) -> str:
        if self.use_gcs:
            return "gcs"
        if self.use_local:
            return "local"
        return "s3"

    async def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> UploadResult:
        """Write bytes at ``path`` and report the verified completion state."""
        if self.use_gcs:
            return await asyncio.to_thread(self._put_gcs, path, data, content_type)
        elif self.use_local:
            return await self._put_local(path, data)
        else:
            return await asyncio.to_thread(self._put_s3, path, data, content_type)

    def _put_gcs(self, path: str, data: bytes, content_type: str) -> UploadResult:
        """Upload to Google Cloud Storage."""
        blob = self.bucket_uploads.blob(path)
        blob.upload_from_string(data, content_type=content_type)
        blob.reload()
        size = blob.size or 0
        return UploadResult(path=path, state="success" if size == len(data) else "size_mismatch", bytes_transferred=size)

    async def _put_local(self, path: str, data: bytes) -> UploadResult:
        """Save file to local filesystem."""
        file_path = self._local_file(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "wb") as f:
            f.write(data)

        size = file_path.stat().st_size if file_path.exists() else 0
        return UploadResult(path=path, state="success" if size == len(data) else "size_mismatch", bytes_transferred=size)

    def _put_s3(self, path: str, data: bytes, content_type: str) -> UploadResult:
        """Upload to S3."""
        self.s3.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type
        )
        head = self.s3.head_object(Bucket=self.bucket, Key=path)
        size = head.get("ContentLength", 0)
        return UploadResult(path=path, state="success" if size == len(data) else "size_mismatch", bytes_transferred=size)

    async def get_file(self, path: str) -> bytes:
        """Get file contents."""
        if self.use_gcs:
            blob = self.bucket_uploads.blob(path)
            return await asyncio.to_thread(blob.download_as_bytes)
        elif self.use_local:
            file_path = self._local_file(path)
            with open(file_path, "rb") as f:
                return f.read()
        else:
            response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=path)
            return response["Body"].read()

    def _local_file(self, path: str) -> Path:
        """Resolve ``path`` under the storage root, refusing escapes."""
        base = self.base_path.resolve()
        file_path = (base / path).resolve()
        if base not in file_path.parents:
            raise FileNotFoundError(path)
        return file_path

    def get_public_url(self, path: str) -> str:
        """Get public URL for file."""
        # All backends are served through the API file proxy
        return f"{self.public_base_url}/files/{path}"
