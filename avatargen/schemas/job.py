"""
Job Schemas
Pydantic models for avatar generation jobs and prediction results.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job status enum."""
    UPLOADING = "uploading"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class AvatarJob(BaseModel):
    """
    A job record as stored in the ``avatarGenerations`` collection.

    Attribute names are snake_case; the stored document uses the camelCase
    aliases.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    status: JobStatus = JobStatus.UPLOADING
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    user_id: Optional[str] = Field(default=None, alias="userId")
    platform: Optional[str] = None
    prompt: Optional[str] = None
    upload_id: Optional[str] = Field(default=None, alias="uploadId")
    original_image_url: Optional[str] = Field(default=None, alias="originalImageUrl")
    original_image_storage_path: Optional[str] = Field(default=None, alias="originalImageStoragePath")
    image_data: Optional[str] = Field(default=None, alias="imageData")
    prediction_id: Optional[str] = Field(default=None, alias="predictionId")
    generated_image_url: Optional[str] = Field(default=None, alias="generatedImageUrl")
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    attempts: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AvatarJob":
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Document dict without the store-assigned id."""
        return self.model_dump(by_alias=True, exclude={"id"}, mode="python")


class AvatarJobResponse(BaseModel):
    """Schema for job responses. Never carries the inline payload."""
    id: str
    status: JobStatus
    created_at: Optional[datetime]
    original_image_url: Optional[str]
    generated_image_url: Optional[str]
    prediction_id: Optional[str]
    error: Optional[str]
    error_code: Optional[str]
    attempts: int

    @classmethod
    def from_job(cls, job: AvatarJob) -> "AvatarJobResponse":
        return cls(
            id=job.id,
            status=job.status,
            created_at=job.created_at,
            original_image_url=job.original_image_url,
            generated_image_url=job.generated_image_url,
            prediction_id=job.prediction_id,
            error=job.error,
            error_code=job.error_code,
            attempts=job.attempts,
        )


class AvatarSubmitResponse(BaseModel):
    """Schema for the upload trigger response."""
    job_id: str
    status: str
    message: str


class PredictionState(str, Enum):
    """Normalized prediction status."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PredictionResult(BaseModel):
    """Single status check of a prediction."""
    status: PredictionState
    output: Optional[Any] = None
    error: Optional[str] = None

    @property
    def output_url(self) -> Optional[str]:
        """First output URL; the service returns a list or a bare string."""
        if isinstance(self.output, list):
            return self.output[0] if self.output else None
        if isinstance(self.output, str):
            return self.output or None
        return None
