"""SSE endpoint for real-time upload progress streaming."""

from fastapi import APIRouter, Depends
from starlette.responses import StreamingResponse

from upload_backend.dependencies import get_current_owner, get_upload_service
from upload_backend.services.upload_service import UploadService
from upload_backend.utils.progress import progress_manager

router = APIRouter(tags=["uploads"])


@router.get("/upload/progress/{upload_id}")
async def stream_upload_progress(
    upload_id: str,
    owner_id: str = Depends(get_current_owner),
    service: UploadService = Depends(get_upload_service),
):
    """SSE stream of progress updates for a specific upload."""
    snapshot = await service.get_upload_status(upload_id, owner_id=owner_id)
    initial = {
        "status": snapshot.status,
        "uploadedChunks": snapshot.uploaded_chunks,
        "totalChunks": snapshot.total_chunks,
        "progress": round(snapshot.progress, 2),
    }
    return StreamingResponse(
        progress_manager.subscribe(upload_id, initial),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
