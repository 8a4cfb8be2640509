"""Upload request/response schemas. Field names are camelCase on the wire."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiateUploadRequest(CamelModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int
    mime_type: str | None = Field(default=None, max_length=100)
    chunk_size: int | None = None
    metadata: dict[str, Any] | None = None


class UploadIdRequest(CamelModel):
    upload_id: str = Field(min_length=1, max_length=64)


class InitiateUploadResponse(CamelModel):
    upload_id: str
    chunk_size: int
    total_chunks: int


class ChunkUploadResponse(CamelModel):
    chunk_index: int
    uploaded_chunks: int
    total_chunks: int
    progress: float
    already_uploaded: bool = False


class CompleteUploadResponse(CamelModel):
    upload_id: str
    file_name: str
    final_path: str
    file_size: int


class CancelUploadResponse(CamelModel):
    upload_id: str
    status: str = "cancelled"


class MissingChunksResponse(CamelModel):
    upload_id: str
    missing_chunks: list[int]


class UploadStatusResponse(CamelModel):
    upload_id: str
    file_name: str
    file_size: int
    mime_type: str | None = None
    chunk_size: int
    total_chunks: int
    uploaded_chunks: int
    status: str
    progress: float
    missing_chunks: list[int] = []
    final_path: str | None = None
    metadata: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class UploadSummary(CamelModel):
    upload_id: str
    file_name: str
    file_size: int
    status: str
    uploaded_chunks: int
    total_chunks: int
    progress: float
    created_at: datetime


class UploadListResponse(CamelModel):
    items: list[UploadSummary]
    total: int
