"""
Tests for the HTTP surface.

The app runs its real lifespan (recover + feed) on a pipeline with a local
blob store, the in-memory document store and a scripted prediction service.
"""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from avatargen.core.config import Settings
from avatargen.main import create_app
from avatargen.pipeline import build_pipeline
from avatargen.services.document_store import InMemoryDocumentStore
from avatargen.services.storage import StorageService

from conftest import OUTPUT_URL, FakeReplicate

SMALL_IMAGE = b"\xff\xd8\xff\xe0" + b"\x10" * 46


@pytest.fixture
def service() -> FakeReplicate:
    return FakeReplicate(statuses=["processing", "succeeded"])


@pytest.fixture
def client(tmp_path, service):
    """Provide a TestClient with the lifespan running."""
    config = Settings(
        API_BASE_URL="http://testserver",
        POLL_INTERVAL=0,
        POLL_MAX_ATTEMPTS=5,
        POLL_ERROR_RETRIES=1,
        SUBMISSION_MODE="auto",
        REDRIVE_ENABLED=True,
    )
    storage = StorageService(
        use_gcs=False,
        use_local=True,
        local_path=str(tmp_path / "blobs"),
        public_base_url="http://testserver",
    )
    pipeline = build_pipeline(config, storage=storage, store=InMemoryDocumentStore(), predictions=service.client())
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


def upload(client: TestClient, payload: bytes = SMALL_IMAGE):
    return client.post(
        "/api/v1/avatars",
        files={"image": ("face.jpg", payload, "image/jpeg")},
        data={"platform": "ios"},
    )


def wait_for_status(client: TestClient, job_id: str, *statuses: str, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/avatars/{job_id}").json()
        if body["status"] in statuses:
            return body
        assert time.monotonic() < deadline, f"job stuck in {body['status']}"
        time.sleep(0.01)


class TestCreateAvatar:
    """Test suite for POST /api/v1/avatars."""

    def test_upload_should_accept_and_complete(self, client: TestClient) -> None:
        """Test a 202 answer and a completed job without the inline payload."""
        # Act
        response = upload(client)

        # Assert
        assert response.status_code == 202
        job_id = response.json()["job_id"]
        body = wait_for_status(client, job_id, "completed", "error")
        assert body["status"] == "completed"
        assert body["generated_image_url"] == OUTPUT_URL
        assert body["attempts"] == 1
        assert "image_data" not in body
        assert "imageData" not in body

    def test_empty_upload_should_be_rejected(self, client: TestClient) -> None:
        """Test an empty file never creates a job."""
        response = upload(client, b"")

        assert response.status_code == 400
        assert client.get("/api/v1/avatars").json() == []


class TestReadAvatars:
    """Test suite for the read routes."""

    def test_get_missing_job_should_return_404(self, client: TestClient) -> None:
        """Test an unknown id."""
        response = client.get("/api/v1/avatars/does-not-exist")

        assert response.status_code == 404
        assert "not found" in response.json()["detail"].lower()

    def test_list_should_filter_by_status(self, client: TestClient) -> None:
        """Test the status query parameter."""
        job_id = upload(client).json()["job_id"]
        wait_for_status(client, job_id, "completed")

        completed = client.get("/api/v1/avatars", params={"job_status": "completed"}).json()
        failed = client.get("/api/v1/avatars", params={"job_status": "error"}).json()

        assert [job["id"] for job in completed] == [job_id]
        assert failed == []

    def test_file_proxy_should_serve_uploaded_source(self, client: TestClient) -> None:
        """Test the source locator resolves through the file route."""
        job_id = upload(client).json()["job_id"]
        body = wait_for_status(client, job_id, "completed")

        response = client.get(body["original_image_url"].replace("http://testserver", ""))

        assert response.status_code == 200
        assert response.content == SMALL_IMAGE
        assert response.headers["content-type"] == "image/jpeg"

    def test_file_proxy_should_return_404_for_missing_file(self, client: TestClient) -> None:
        """Test an unknown blob path."""
        assert client.get("/files/uploads/public-user/missing.jpg").status_code == 404

    def test_health_should_report_components(self, client: TestClient) -> None:
        """Test the health endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"]["storage"] == "local"
        assert body["services"]["document_store"] == "ok"


class TestRetryAvatar:
    """Test suite for POST /api/v1/avatars/{id}/retry."""

    def test_retry_should_resubmit_failed_job(self, client: TestClient, service: FakeReplicate) -> None:
        """Test a failed submission can be retried to completion."""
        # Arrange
        service.submit_status = 500
        job_id = upload(client).json()["job_id"]
        failed = wait_for_status(client, job_id, "error")
        service.submit_status = 201

        # Act
        response = client.post(f"/api/v1/avatars/{job_id}/retry")

        # Assert
        assert failed["error"] == "API Error: 500"
        assert response.status_code == 202
        body = wait_for_status(client, job_id, "completed")
        assert body["attempts"] == 2
        assert body["error"] is None

    def test_retry_should_conflict_for_completed_job(self, client: TestClient) -> None:
        """Test a completed job cannot be retried."""
        job_id = upload(client).json()["job_id"]
        wait_for_status(client, job_id, "completed")

        response = client.post(f"/api/v1/avatars/{job_id}/retry")

        assert response.status_code == 409

    def test_retry_missing_job_should_return_404(self, client: TestClient) -> None:
        """Test retrying an unknown id."""
        assert client.post("/api/v1/avatars/does-not-exist/retry").status_code == 404


class TestDeleteAvatars:
    """Test suite for the delete routes."""

    def test_delete_should_remove_job(self, client: TestClient) -> None:
        """Test a single delete."""
        job_id = upload(client).json()["job_id"]
        wait_for_status(client, job_id, "completed")

        response = client.delete(f"/api/v1/avatars/{job_id}")

        assert response.status_code == 204
        assert client.get(f"/api/v1/avatars/{job_id}").status_code == 404
        assert client.delete(f"/api/v1/avatars/{job_id}").status_code == 404

    def test_delete_all_should_remove_three_jobs(self, client: TestClient) -> None:
        """Test the bulk delete leaves an empty list."""
        for _ in range(3):
            job_id = upload(client).json()["job_id"]
            wait_for_status(client, job_id, "completed")

        response = client.delete("/api/v1/avatars")

        assert response.status_code == 200
        assert response.json() == {"deleted": 3}
        assert client.get("/api/v1/avatars").json() == []


class TestStoreUnavailable:
    """Test suite for routes when the document store fails."""

    def test_get_should_return_503(self, client: TestClient) -> None:
        """Test a failed read is reported as unavailable, not as a server error."""
        client.app.state.pipeline.store.get = AsyncMock(side_effect=RuntimeError("database is locked"))

        response = client.get("/api/v1/avatars/some-job")

        assert response.status_code == 503
        assert "database is locked" in response.json()["detail"]

    def test_retry_should_return_503(self, client: TestClient) -> None:
        """Test retry when the job cannot be read."""
        client.app.state.pipeline.store.get = AsyncMock(side_effect=RuntimeError("database is locked"))

        assert client.post("/api/v1/avatars/some-job/retry").status_code == 503

    def test_delete_should_return_503(self, client: TestClient) -> None:
        """Test a failed single delete."""
        client.app.state.pipeline.store.delete = AsyncMock(side_effect=RuntimeError("database is locked"))

        assert client.delete("/api/v1/avatars/some-job").status_code == 503

    def test_delete_all_should_return_503_and_keep_jobs(self, client: TestClient) -> None:
        """Test a failed bulk delete leaves every job listed."""
        # Arrange
        job_id = upload(client).json()["job_id"]
        wait_for_status(client, job_id, "completed")
        client.app.state.pipeline.store.delete_all = AsyncMock(side_effect=RuntimeError("database is locked"))

        # Act
        response = client.delete("/api/v1/avatars")

        # Assert
        assert response.status_code == 503
        assert [job["id"] for job in client.get("/api/v1/avatars").json()] == [job_id]
