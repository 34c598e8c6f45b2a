"""
Shared fixtures for the avatar pipeline tests.

The prediction service is faked with ``httpx.MockTransport``; the blob store
writes to a temporary directory; the document store is in memory.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from avatargen.core.redis import RedisManager
from avatargen.schemas.job import JobStatus
from avatargen.services.change_bus import RedisChangeBus
from avatargen.services.document_store import InMemoryDocumentStore
from avatargen.services.job_records import JobRecordManager
from avatargen.services.prediction_client import PredictionClient
from avatargen.services.storage import StorageService
from avatargen.services.uploader import BlobUploader
from avatargen.workers.orchestrator import JobOrchestrator

COLLECTION = "avatarGenerations"
OUTPUT_URL = "https://x/avatar.png"


class RecordingDocumentStore(InMemoryDocumentStore):
    """In-memory store that logs every write to a shared event list."""

    def __init__(self, events: Optional[List[tuple]] = None):
        super().__init__()
        self.events = events if events is not None else []

    async def create(self, collection, data):
        doc_id = await super().create(collection, data)
        self.events.append(("create", doc_id, dict(data)))
        return doc_id

    async def update(self, collection, doc_id, fields):
        await super().update(collection, doc_id, fields)
        self.events.append(("update", doc_id, dict(fields)))

    def writes(self, doc_id: str) -> List[Dict[str, Any]]:
        return [fields for kind, target, fields in self.events if kind in ("create", "update") and target == doc_id]


class FakeReplicate:
    """
    Scripted prediction service.

    ``statuses`` is consumed one entry per status check; the last entry
    repeats. ``"http500"`` answers the check with a server error.
    """

    def __init__(
        self,
        handle: str = "H1",
        statuses: Optional[List[str]] = None,
        output: Any = None,
        submit_status: int = 201,
        submit_body: Optional[Dict[str, Any]] = None,
        events: Optional[List[tuple]] = None,
    ):
        self.handle = handle
        self.statuses = list(statuses or ["succeeded"])
        self.output = output if output is not None else [OUTPUT_URL]
        self.submit_status = submit_status
        self.submit_body = submit_body
        self.events = events if events is not None else []
        self.submissions: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.polls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/predictions"):
            self.submissions.append(json.loads(request.content))
            self.events.append(("submit",))
            if self.submit_status >= 400:
                return httpx.Response(self.submit_status, json={"detail": "Invalid version or not permitted"})
            body = self.submit_body if self.submit_body is not None else {"id": self.handle, "status": "starting"}
            return httpx.Response(self.submit_status, json=body)

        if request.method == "GET" and "/predictions/" in request.url.path:
            self.polls += 1
            self.events.append(("poll", request.url.path.rsplit("/", 1)[-1]))
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            if status == "http500":
                return httpx.Response(500, text="upstream unavailable")
            body = {"id": self.handle, "status": status}
            if status == "succeeded":
                body["output"] = self.output
            if status == "failed":
                body["error"] = "NSFW content detected"
            return httpx.Response(200, json=body)

        return httpx.Response(404)

    def client(self, **kwargs) -> PredictionClient:
        return PredictionClient(
            api_token="test-token",
            base_url="https://api.replicate.test/v1",
            model_version="test-version",
            prompt="Generate an anime style avatar, highly detailed portrait",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


class FakePubSub:
    """
    Redis pub/sub double.

    Put message dicts on ``messages``; an exception instance makes
    ``listen()`` raise it, as a dropped connection does.
    """

    def __init__(self):
        self.messages: asyncio.Queue = asyncio.Queue()
        self.channels: List[str] = []
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self.channels.append(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.remove(channel)

    async def aclose(self) -> None:
        self.closed = True

    async def listen(self):
        while True:
            message = await self.messages.get()
            if isinstance(message, Exception):
                raise message
            yield message


def redis_bus(*pubsubs: FakePubSub) -> RedisChangeBus:
    """RedisChangeBus whose successive subscriptions use ``pubsubs`` in order."""
    connection = MagicMock()
    connection.publish = AsyncMock()
    connection.pubsub.side_effect = list(pubsubs)
    manager = MagicMock(spec=RedisManager)
    manager.get_connection.return_value = connection
    return RedisChangeBus(manager)


@pytest.fixture
def events() -> List[tuple]:
    """Ordered log shared by the recording store and the fake service."""
    return []


@pytest.fixture
def storage(tmp_path) -> StorageService:
    """Local-disk blob store under a temporary directory."""
    return StorageService(
        use_gcs=False,
        use_local=True,
        local_path=str(tmp_path / "blobs"),
        public_base_url="http://testserver",
    )


@pytest.fixture
def uploader(storage: StorageService) -> BlobUploader:
    return BlobUploader(storage, namespace="uploads", default_owner="public-user", timeout=5)


@pytest.fixture
def store(events) -> RecordingDocumentStore:
    return RecordingDocumentStore(events)


@pytest.fixture
def records(store) -> JobRecordManager:
    return JobRecordManager(store, collection=COLLECTION)


@pytest.fixture
def fake_service(events) -> FakeReplicate:
    return FakeReplicate(events=events)


@pytest.fixture
def make_orchestrator(uploader, records):
    """Factory for orchestrators with zero poll delay."""
    def _make(service: FakeReplicate, **kwargs) -> JobOrchestrator:
        options = {
            "submission_mode": "auto",
            "poll_interval": 0,
            "poll_max_attempts": 5,
            "poll_error_retries": 2,
            "max_inline_size": 10_000_000,
        }
        options.update(kwargs)
        return JobOrchestrator(uploader, records, service.client(), **options)
    return _make


@pytest.fixture
def make_pending_job(records):
    """Factory creating a job that is already uploaded and pending."""
    async def _make(**fields) -> str:
        job_id = await records.create({"user_id": "public-user", **fields.pop("initial", {})})
        await records.transition(
            job_id,
            JobStatus.PENDING,
            original_image_url=fields.pop("original_image_url", "http://testserver/files/uploads/public-user/1_abc.jpg"),
            original_image_storage_path=fields.pop("original_image_storage_path", "uploads/public-user/1_abc.jpg"),
            **fields,
        )
        return job_id
    return _make
