"""Pydantic response schemas for the imagex API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    source_buckets: int = Field(description="Number of buckets in the allow-list")
    max_concurrent: int
    active_requests: int
    queued_requests: int
    rejected_requests: int = Field(description="Requests turned away with 503 since startup")


class ErrorResponse(BaseModel):
    """Error body for every failed image request."""

    status: int
    code: str = Field(description="Stable error code, e.g. 'ImageBucket::CannotAccessBucket'")
    message: str
