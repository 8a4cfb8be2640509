import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are read at import time; point everything at throwaway locations first.
_TMP_ROOT = tempfile.mkdtemp(prefix="upload-backend-test-")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("UPLOAD_TEMP_DIR", os.path.join(_TMP_ROOT, "temp"))
os.environ.setdefault("UPLOAD_FINAL_DIR", os.path.join(_TMP_ROOT, "final"))
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")

import jwt
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from upload_backend.config import settings
from upload_backend.db.base import Base
from upload_backend.services.assembler import Assembler
from upload_backend.services.chunk_store import ChunkStore
from upload_backend.services.repository import InMemorySessionRepository
from upload_backend.services.sql_repository import SqlAlchemySessionRepository
from upload_backend.services.upload_service import UploadService
from upload_backend.utils.progress import progress_manager

import upload_backend.models  # noqa: F401  (registers tables on Base.metadata)

MIB = 1024 * 1024


def make_token(owner_id: str = "owner-1", token_type: str = "access", expires_in: int = 3600) -> str:
    payload = {
        "sub": owner_id,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def store(tmp_path):
    return ChunkStore(tmp_path / "temp")


@pytest.fixture
def assembler(tmp_path, store):
    return Assembler(tmp_path / "final", store)


@pytest.fixture
def repo():
    return InMemorySessionRepository()


@pytest.fixture
def service(repo, store, assembler):
    return UploadService(repo, store, assembler, progress=progress_manager)


@pytest_asyncio.fixture
async def sql_session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'uploads.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def sql_repo(sql_session):
    return SqlAlchemySessionRepository(sql_session)


@pytest.fixture
def app(service):
    from upload_backend.dependencies import get_upload_service
    from upload_backend.main import create_app

    application = create_app()
    application.dependency_overrides[get_upload_service] = lambda: service
    return application


@pytest.fixture
def client(app):
    # Not used as a context manager: the lifespan would try to reach the real database.
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def token_for():
    return make_token
