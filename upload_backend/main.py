"""
FastAPI application factory — entry point for the chunked upload backend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from upload_backend.api.v1.router import v1_router
from upload_backend.config import settings
from upload_backend.db.base import Base
from upload_backend.db.session import engine
from upload_backend.dependencies import shutdown_assembly_executor
from upload_backend.middleware.error_handler import (
    ErrorHandlerMiddleware,
    RequestIdMiddleware,
    register_exception_handlers,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    # Create all tables (dev convenience; use migrations in production)
    import upload_backend.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Staging and final storage roots must exist before the first request
    for path in (settings.UPLOAD_TEMP_DIR, settings.UPLOAD_FINAL_DIR):
        path.mkdir(parents=True, exist_ok=True)
    logger.info("Upload storage: temp=%s final=%s", settings.UPLOAD_TEMP_DIR, settings.UPLOAD_FINAL_DIR)

    yield

    # Shutdown: let running assemblies finish, then dispose engine
    await asyncio.to_thread(shutdown_assembly_executor)
    await engine.dispose()


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title="Chunked Upload API",
        description="Resumable chunked file uploads with server-side progress tracking.",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Middleware (last added runs outermost) ────────────
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # ── API Routes ───────────────────────────────────────
    app.include_router(v1_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "upload_backend.main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        reload=True,
    )
