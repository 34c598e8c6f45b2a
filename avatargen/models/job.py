"""
Avatar Generation Model
Database table backing the ``avatarGenerations`` collection.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime, Integer

from avatargen.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AvatarGeneration(Base):
    """One avatar generation job."""

    __tablename__ = "avatar_generations"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    platform = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)

    # Status: uploading, pending, processing, completed, error
    status = Column(String, default="uploading", index=True, nullable=False)
    error = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)

    # Source image
    upload_id = Column(String, nullable=True)
    original_image_url = Column(String, nullable=True)
    original_image_storage_path = Column(String, nullable=True)
    image_data = Column(Text, nullable=True)  # Inline data URI, when stored

    # Prediction
    prediction_id = Column(String, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    generated_image_url = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    seq = Column(Integer, nullable=True, index=True)  # Insertion order, breaks created_at ties

    # Document key -> column
    DOCUMENT_FIELDS = {
        "userId": "user_id",
        "platform": "platform",
        "prompt": "prompt",
        "status": "status",
        "error": "error",
        "errorCode": "error_code",
        "uploadId": "upload_id",
        "originalImageUrl": "original_image_url",
        "originalImageStoragePath": "original_image_storage_path",
        "imageData": "image_data",
        "predictionId": "prediction_id",
        "attempts": "attempts",
        "generatedImageUrl": "generated_image_url",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    }

    def to_document(self) -> dict:
        """Row as a document dict keyed by document field names."""
        doc = {"id": self.id}
        for key, column in self.DOCUMENT_FIELDS.items():
            doc[key] = getattr(self, column)
        return doc
