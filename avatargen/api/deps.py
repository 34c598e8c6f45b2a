"""
API Dependencies
Common dependencies for FastAPI routes (pipeline components).
"""

from fastapi import Request

from avatargen.pipeline import Pipeline
from avatargen.services.job_records import JobRecordManager
from avatargen.workers.orchestrator import JobOrchestrator


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline built by the application lifespan."""
    return request.app.state.pipeline


def get_records(request: Request) -> JobRecordManager:
    return get_pipeline(request).records


def get_orchestrator(request: Request) -> JobOrchestrator:
    return get_pipeline(request).orchestrator
