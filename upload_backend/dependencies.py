"""FastAPI dependency injection — get_current_owner, get_upload_service, etc."""

from concurrent.futures import ThreadPoolExecutor

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from upload_backend.config import settings
from upload_backend.db.session import get_db
from upload_backend.services.assembler import Assembler
from upload_backend.services.chunk_store import ChunkStore
from upload_backend.services.sql_repository import SqlAlchemySessionRepository
from upload_backend.services.upload_service import UploadService
from upload_backend.utils.progress import progress_manager
from upload_backend.utils.security import decode_token

security_scheme = HTTPBearer(auto_error=False)

# Assembly is disk-bound and proportional to file size; keep it off the event loop.
_assembly_executor = ThreadPoolExecutor(
    max_workers=settings.MAX_CONCURRENT_ASSEMBLIES,
    thread_name_prefix="assembler",
)


def shutdown_assembly_executor() -> None:
    """Wait for in-flight assemblies, then release the pool threads."""
    _assembly_executor.shutdown(wait=True)


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials | None = Depends(security_scheme),
) -> str:
    """Extract and validate the bearer JWT, return the caller's owner id (``sub``)."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")

    return str(payload["sub"])


def get_chunk_store() -> ChunkStore:
    return ChunkStore(settings.UPLOAD_TEMP_DIR)


def build_upload_service(db: AsyncSession) -> UploadService:
    store = get_chunk_store()
    return UploadService(
        repo=SqlAlchemySessionRepository(db),
        chunk_store=store,
        assembler=Assembler(settings.UPLOAD_FINAL_DIR, store),
        progress=progress_manager,
        default_chunk_size=settings.DEFAULT_CHUNK_SIZE,
        max_chunk_size=settings.MAX_CHUNK_SIZE,
        executor=_assembly_executor,
    )


async def get_upload_service(db: AsyncSession = Depends(get_db)) -> UploadService:
    return build_upload_service(db)
