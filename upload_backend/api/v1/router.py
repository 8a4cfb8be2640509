"""Aggregates all v1 API routers into a single router."""

from fastapi import APIRouter

from upload_backend.api.v1.health import router as health_router
from upload_backend.api.v1.upload_progress import router as upload_progress_router
from upload_backend.api.v1.uploads import router as uploads_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(health_router)
v1_router.include_router(uploads_router)
v1_router.include_router(upload_progress_router)
