"""Chunked upload API routes — initiate, chunk, complete, cancel, status."""

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from upload_backend.dependencies import get_current_owner, get_upload_service
from upload_backend.schemas.common import SuccessResponse
from upload_backend.schemas.upload import (
    CancelUploadResponse,
    ChunkUploadResponse,
    CompleteUploadResponse,
    InitiateUploadRequest,
    InitiateUploadResponse,
    MissingChunksResponse,
    UploadIdRequest,
    UploadListResponse,
    UploadStatusResponse,
)
from upload_backend.services.errors import InvalidArgument
from upload_backend.services.upload_service import UploadService

router = APIRouter(prefix="/upload", tags=["uploads"])


@router.post("/initiate", response_model=SuccessResponse[InitiateUploadResponse])
async def initiate_upload(
    payload: InitiateUploadRequest,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.initiate_upload(
        owner_id=owner_id,
        file_name=payload.file_name,
        file_size=payload.file_size,
        mime_type=payload.mime_type,
        chunk_size=payload.chunk_size,
        metadata=payload.metadata,
    )
    return SuccessResponse(data=result)


@router.post("/chunk", response_model=SuccessResponse[ChunkUploadResponse])
async def upload_chunk(
    upload_id: str = Form(..., alias="uploadId"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    checksum: str | None = Form(None),
    chunk: UploadFile | None = File(None),
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    if chunk is None:
        raise InvalidArgument("No chunk file provided")
    data = await chunk.read()
    result = await service.upload_chunk(
        upload_id,
        chunk_index,
        data,
        checksum=checksum or None,
        owner_id=owner_id,
    )
    return SuccessResponse(data=result)


@router.post("/complete", response_model=SuccessResponse[CompleteUploadResponse])
async def complete_upload(
    payload: UploadIdRequest,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.complete_upload(payload.upload_id, owner_id=owner_id)
    return SuccessResponse(data=result)


@router.post("/cancel", response_model=SuccessResponse[CancelUploadResponse])
async def cancel_upload(
    payload: UploadIdRequest,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.cancel_upload(payload.upload_id, owner_id=owner_id)
    return SuccessResponse(data=result)


@router.get("/status", response_model=SuccessResponse[UploadStatusResponse])
async def get_upload_status_by_query(
    upload_id: str = Query(..., alias="uploadId"),
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.get_upload_status(upload_id, owner_id=owner_id)
    return SuccessResponse(data=result)


@router.get("/status/{upload_id}", response_model=SuccessResponse[UploadStatusResponse])
async def get_upload_status(
    upload_id: str,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    result = await service.get_upload_status(upload_id, owner_id=owner_id)
    return SuccessResponse(data=result)


@router.get("/missing/{upload_id}", response_model=SuccessResponse[MissingChunksResponse])
async def get_missing_chunks(
    upload_id: str,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    missing = await service.get_missing_chunks(upload_id, owner_id=owner_id)
    return SuccessResponse(data=MissingChunksResponse(upload_id=upload_id, missing_chunks=missing))


@router.get("/sessions", response_model=SuccessResponse[UploadListResponse])
async def list_uploads(
    status_filter: str | None = Query(None, alias="status"),
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    items = await service.list_uploads(owner_id, status_filter)
    return SuccessResponse(data=UploadListResponse(items=items, total=len(items)))
