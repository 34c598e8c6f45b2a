"""
Tests for the blob store and the uploader.

Covers path generation, verified writes and every failure mode that must
surface as a TransferError.
"""

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock

import pytest

from avatargen.core.exceptions import TransferError
from avatargen.services.storage import StorageService, UploadResult
from avatargen.services.uploader import BlobUploader

PATH_RE = re.compile(r"^uploads/public-user/\d+_[0-9a-f]{12}\.jpg$")


@pytest.fixture
def mock_storage() -> MagicMock:
    """Provide a storage double whose writes can be scripted."""
    storage = MagicMock(spec=StorageService)
    storage.get_public_url.side_effect = lambda path: f"http://testserver/files/{path}"
    return storage


class TestStorageServiceLocal:
    """Test suite for the local filesystem backend."""

    @pytest.mark.asyncio
    async def test_put_should_write_file_and_report_success(self, storage: StorageService) -> None:
        """Test put returns a verified success with the byte count."""
        # Act
        result = await storage.put("uploads/u/1_a.jpg", b"x" * 50, "image/jpeg")

        # Assert
        assert result.state == "success"
        assert result.bytes_transferred == 50
        assert await storage.get_file("uploads/u/1_a.jpg") == b"x" * 50

    def test_public_url_should_point_at_file_proxy(self, storage: StorageService) -> None:
        """Test locators are served through the API file route."""
        assert storage.get_public_url("uploads/u/1_a.jpg") == "http://testserver/files/uploads/u/1_a.jpg"
        assert storage.backend_name == "local"

    @pytest.mark.asyncio
    async def test_get_file_should_refuse_paths_outside_root(self, storage: StorageService) -> None:
        """Test path traversal is rejected."""
        with pytest.raises(FileNotFoundError):
            await storage.get_file("../../etc/passwd")


class TestBlobUploaderBuildPath:
    """Test suite for BlobUploader.build_path()."""

    def test_build_path_should_follow_namespace_owner_timestamp_layout(self, uploader: BlobUploader) -> None:
        """Test the generated path shape."""
        # Act
        path = uploader.build_path("image/jpeg")

        # Assert
        assert PATH_RE.match(path)

    def test_build_path_should_never_repeat(self, uploader: BlobUploader) -> None:
        """Test many paths generated back to back are unique."""
        paths = {uploader.build_path("image/jpeg") for _ in range(500)}
        assert len(paths) == 500

    def test_build_path_should_sanitize_hint_and_map_extension(self, uploader: BlobUploader) -> None:
        """Test unsafe hint characters are replaced and PNG keeps its extension."""
        path = uploader.build_path("image/png", path_hint="../user 42")
        assert path.startswith("uploads/user-42/")
        assert path.endswith(".png")


class TestBlobUploaderUpload:
    """Test suite for BlobUploader.upload()."""

    @pytest.mark.asyncio
    async def test_upload_should_return_locator_and_path(self, uploader: BlobUploader, storage: StorageService) -> None:
        """Test a verified write yields a retrievable locator."""
        # Act
        locator, path = await uploader.upload(b"\xff\xd8" + b"a" * 48, "image/jpeg")

        # Assert
        assert PATH_RE.match(path)
        assert locator == f"http://testserver/files/{path}"
        assert len(await storage.get_file(path)) == 50

    @pytest.mark.asyncio
    async def test_upload_should_reject_empty_payload(self, uploader: BlobUploader) -> None:
        """Test an empty payload never reaches the store."""
        with pytest.raises(TransferError):
            await uploader.upload(b"")

    @pytest.mark.asyncio
    async def test_upload_should_fail_on_non_success_state(self, mock_storage: MagicMock) -> None:
        """Test a canceled write raises with the backend state."""
        # Arrange
        mock_storage.put = AsyncMock(return_value=UploadResult(path="p", state="canceled", bytes_transferred=0))
        uploader = BlobUploader(mock_storage, timeout=5)

        # Act / Assert
        with pytest.raises(TransferError) as exc_info:
            await uploader.upload(b"abc")
        assert exc_info.value.state == "canceled"
        mock_storage.get_public_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_should_fail_on_byte_mismatch(self, mock_storage: MagicMock) -> None:
        """Test a short write is not reported as success."""
        mock_storage.put = AsyncMock(return_value=UploadResult(path="p", state="success", bytes_transferred=2))
        uploader = BlobUploader(mock_storage, timeout=5)

        with pytest.raises(TransferError) as exc_info:
            await uploader.upload(b"abc")
        assert exc_info.value.state == "incomplete"

    @pytest.mark.asyncio
    async def test_upload_should_wrap_backend_exceptions(self, mock_storage: MagicMock) -> None:
        """Test backend exceptions become TransferError."""
        mock_storage.put = AsyncMock(side_effect=OSError("disk full"))
        uploader = BlobUploader(mock_storage, timeout=5)

        with pytest.raises(TransferError) as exc_info:
            await uploader.upload(b"abc")
        assert "disk full" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_upload_should_time_out(self, mock_storage: MagicMock) -> None:
        """Test a write slower than the timeout is abandoned."""
        # Arrange
        async def slow_put(*args, **kwargs):
            await asyncio.sleep(5)

        mock_storage.put = slow_put
        uploader = BlobUploader(mock_storage, timeout=0.01)

        # Act / Assert
        with pytest.raises(TransferError) as exc_info:
            await uploader.upload(b"abc")
        assert exc_info.value.state == "timeout"
