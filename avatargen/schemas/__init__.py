# Pydantic schemas package
from avatargen.schemas.job import (
    JobStatus, AvatarJob, AvatarJobResponse, AvatarSubmitResponse,
    PredictionState, PredictionResult
)

__all__ = [
    "JobStatus", "AvatarJob", "AvatarJobResponse", "AvatarSubmitResponse",
    "PredictionState", "PredictionResult",
]
