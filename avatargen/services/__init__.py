# Services package - storage, records and external integrations
from avatargen.services.storage import StorageService, UploadResult
from avatargen.services.uploader import BlobUploader
from avatargen.services.change_bus import ChangeBus, LocalChangeBus, RedisChangeBus
from avatargen.services.document_store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from avatargen.services.job_records import JobRecordManager
from avatargen.services.prediction_client import PredictionClient, PredictionInput

__all__ = [
    "StorageService",
    "UploadResult",
    "BlobUploader",
    "ChangeBus",
    "LocalChangeBus",
    "RedisChangeBus",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqlDocumentStore",
    "JobRecordManager",
    "PredictionClient",
    "PredictionInput",
]
