"""Pydantic models for API request/response schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from modelkeeper.models.record import ModelRecord


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    local_models: int = 0
    active_downloads: int = 0
    loaded_models: int = 0


class ModelResponse(BaseModel):
    """Model information response."""

    id: str
    name: str
    display_name: str
    author: str
    description: str
    size: int
    size_string: str
    parameters: str
    compatibility: str
    tags: list[str]
    license: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    download_url: Optional[str] = None
    local_path: Optional[str] = None
    checksum: Optional[str] = None
    is_local: bool
    is_loaded: bool
    can_download: bool

    @classmethod
    def from_record(cls, record: ModelRecord) -> "ModelResponse":
        return cls(
            **record.model_dump(exclude={"version", "compatibility", "tags"}),
            display_name=record.display_name,
            size_string=record.size_string,
            compatibility=record.compatibility.value,
            tags=list(record.tags),
            can_download=record.can_download,
        )


class SuccessResponse(BaseModel):
    """Generic success response."""

    success: bool
    message: str | None = None
