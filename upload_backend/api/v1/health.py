"""Health check endpoints."""

from fastapi import APIRouter

from upload_backend.config import settings

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check():
    return {"status": "ok"}


@router.get("/storage")
async def storage_check():
    temp_ok = settings.UPLOAD_TEMP_DIR.is_dir()
    final_ok = settings.UPLOAD_FINAL_DIR.is_dir()
    return {
        "status": "ok" if temp_ok and final_ok else "degraded",
        "temp_dir": temp_ok,
        "final_dir": final_ok,
    }
