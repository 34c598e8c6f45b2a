"""
Pipeline Wiring
Builds every collaborator of the avatar pipeline from settings and hands them
out explicitly; nothing here is a global singleton.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from avatargen.core.config import Settings, get_settings
from avatargen.core.database import create_db_engine, create_session_factory, init_db
from avatargen.core.redis import RedisManager
from avatargen.models import AvatarGeneration
from avatargen.services.change_bus import ChangeBus, LocalChangeBus, RedisChangeBus
from avatargen.services.document_store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from avatargen.services.job_records import JobRecordManager
from avatargen.services.prediction_client import PredictionClient
from avatargen.services.storage import StorageService
from avatargen.services.uploader import BlobUploader
from avatargen.workers.feed import JobFeed
from avatargen.workers.orchestrator import JobOrchestrator, Notifier

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """All pipeline components, wired together."""
    storage: StorageService
    uploader: BlobUploader
    store: DocumentStore
    records: JobRecordManager
    predictions: PredictionClient
    orchestrator: JobOrchestrator
    feed: JobFeed

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.predictions.close()
        await self.store.close()
        logger.info("[Pipeline] Closed")


def build_change_bus(config: Settings) -> ChangeBus:
    if config.CHANGE_BUS == "redis":
        logger.info("[Pipeline] Using Redis change bus")
        return RedisChangeBus(RedisManager(config.REDIS_URL))
    if config.CHANGE_BUS != "local":
        raise ValueError(f"Unknown CHANGE_BUS: {config.CHANGE_BUS}")
    return LocalChangeBus()


def build_document_store(config: Settings, bus: ChangeBus) -> DocumentStore:
    if config.DOCUMENT_STORE == "sql":
        engine = create_db_engine(config.DATABASE_URL)
        init_db(engine)
        return SqlDocumentStore(
            create_session_factory(engine),
            models={config.JOBS_COLLECTION: AvatarGeneration},
            bus=bus,
        )
    if config.DOCUMENT_STORE != "memory":
        raise ValueError(f"Unknown DOCUMENT_STORE: {config.DOCUMENT_STORE}")
    logger.info("[Pipeline] Using in-memory document store")
    return InMemoryDocumentStore(bus)


def build_pipeline(
    config: Optional[Settings] = None,
    storage: Optional[StorageService] = None,
    store: Optional[DocumentStore] = None,
    predictions: Optional[PredictionClient] = None,
    notifier: Optional[Notifier] = None,
) -> Pipeline:
    """
    Build the pipeline. Any component passed in is used as-is, which is how
    tests swap in fakes.
    """
    config = config or get_settings()

    storage = storage or StorageService(public_base_url=config.API_BASE_URL)
    uploader = BlobUploader(
        storage,
        namespace=config.UPLOAD_NAMESPACE,
        default_owner=config.DEFAULT_OWNER_ID,
        timeout=config.UPLOAD_TIMEOUT,
    )
    store = store or build_document_store(config, build_change_bus(config))
    records = JobRecordManager(store, collection=config.JOBS_COLLECTION)
    predictions = predictions or PredictionClient(
        api_token=config.REPLICATE_API_TOKEN,
        base_url=config.REPLICATE_API_URL,
        model_version=config.REPLICATE_MODEL_VERSION,
        prompt=config.AVATAR_PROMPT,
        max_inline_size=config.MAX_INLINE_PAYLOAD_SIZE,
        submit_timeout=config.SUBMIT_TIMEOUT,
        poll_timeout=config.POLL_REQUEST_TIMEOUT,
    )
    orchestrator = JobOrchestrator(
        uploader,
        records,
        predictions,
        submission_mode=config.SUBMISSION_MODE,
        poll_interval=config.POLL_INTERVAL,
        poll_max_attempts=config.POLL_MAX_ATTEMPTS,
        poll_error_retries=config.POLL_ERROR_RETRIES,
        max_inline_size=config.MAX_INLINE_PAYLOAD_SIZE,
        notifier=notifier,
    )
    feed = JobFeed(
        records,
        orchestrator,
        redrive=config.REDRIVE_ENABLED,
        restart_delay=config.FEED_RESTART_DELAY,
    )

    logger.info(
        f"[Pipeline] Built (storage={storage.backend_name}, store={type(store).__name__}, "
        f"mode={orchestrator.submission_mode.value})"
    )
    return Pipeline(
        storage=storage,
        uploader=uploader,
        store=store,
        records=records,
        predictions=predictions,
        orchestrator=orchestrator,
        feed=feed,
    )


__all__ = ["Pipeline", "build_change_bus", "build_document_store", "build_pipeline"]
