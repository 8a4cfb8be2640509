"""SQLAlchemy-backed session repository.

Chunk idempotency rests on the ``(session_id, chunk_index)`` unique constraint:
the chunk row is inserted with ON CONFLICT DO NOTHING where the dialect
supports it, and the session counter is bumped with a single
``uploaded_chunks = uploaded_chunks + 1`` UPDATE in the same transaction.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from upload_backend.models.upload import UploadChunk, UploadSession
from upload_backend.services.errors import InvalidState
from upload_backend.services.repository import (
    ACTIVE_STATUSES,
    ChunkRecord,
    SessionRecord,
    SessionRepository,
)

logger = logging.getLogger(__name__)

# Record attribute -> ORM attribute, where they differ.
_COLUMN_NAMES = {"metadata": "metadata_json"}


def _to_record(row: UploadSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        upload_id=row.upload_id,
        owner_id=row.owner_id,
        file_name=row.file_name,
        file_size=row.file_size,
        mime_type=row.mime_type,
        chunk_size=row.chunk_size,
        total_chunks=row.total_chunks,
        uploaded_chunks=row.uploaded_chunks,
        status=row.status,
        temp_path=row.temp_path,
        final_path=row.final_path,
        metadata=row.metadata_json,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _chunk_to_record(row: UploadChunk) -> ChunkRecord:
    return ChunkRecord(
        session_id=row.session_id,
        chunk_index=row.chunk_index,
        chunk_size=row.chunk_size,
        checksum=row.checksum,
        uploaded_at=row.uploaded_at,
    )


class SqlAlchemySessionRepository(SessionRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self, session_id: int) -> UploadSession | None:
        result = await self.db.execute(
            select(UploadSession)
            .where(UploadSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        row = UploadSession(
            upload_id=session.upload_id,
            owner_id=session.owner_id,
            file_name=session.file_name,
            file_size=session.file_size,
            mime_type=session.mime_type,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            uploaded_chunks=session.uploaded_chunks,
            status=session.status,
            temp_path=session.temp_path,
            metadata_json=session.metadata,
        )
        self.db.add(row)
        await self.db.flush()
        await self.db.refresh(row)
        return _to_record(row)

    async def get_session_by_upload_id(self, upload_id: str) -> SessionRecord | None:
        result = await self.db.execute(
            select(UploadSession)
            .where(UploadSession.upload_id == upload_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_record(row) if row else None

    async def update_session(
        self,
        session_id: int,
        fields: dict,
        only_if_status: tuple[str, ...] | None = None,
    ) -> SessionRecord | None:
        values = {_COLUMN_NAMES.get(k, k): v for k, v in fields.items()}
        values["updated_at"] = datetime.now(timezone.utc)

        stmt = update(UploadSession).where(UploadSession.id == session_id)
        if only_if_status is not None:
            stmt = stmt.where(UploadSession.status.in_(only_if_status))
        result = await self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 0:
            return None

        row = await self._get_row(session_id)
        return _to_record(row) if row else None

    async def insert_chunk_row(self, chunk: ChunkRecord) -> int | None:
        values = {
            "session_id": chunk.session_id,
            "chunk_index": chunk.chunk_index,
            "chunk_size": chunk.chunk_size,
            "checksum": chunk.checksum,
            "uploaded_at": chunk.uploaded_at,
        }

        if not await self._insert_chunk_ignoring_duplicate(values):
            return None

        result = await self.db.execute(
            update(UploadSession)
            .where(UploadSession.id == chunk.session_id, UploadSession.status.in_(ACTIVE_STATUSES))
            .values(
                uploaded_chunks=UploadSession.uploaded_chunks + 1,
                status="uploading",
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.execute(
                delete(UploadChunk).where(
                    UploadChunk.session_id == chunk.session_id,
                    UploadChunk.chunk_index == chunk.chunk_index,
                )
            )
            raise InvalidState("Upload session is no longer accepting chunks")

        count = await self.db.execute(
            select(UploadSession.uploaded_chunks).where(UploadSession.id == chunk.session_id)
        )
        return count.scalar_one()

    async def _insert_chunk_ignoring_duplicate(self, values: dict) -> bool:
        """Insert one chunk row; False if the (session, index) pair already existed."""
        dialect = self.db.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert
            else:
                from sqlalchemy.dialects.sqlite import insert
            stmt = insert(UploadChunk).values(**values).on_conflict_do_nothing(
                index_elements=["session_id", "chunk_index"]
            )
            result = await self.db.execute(stmt)
            return result.rowcount == 1

        try:
            async with self.db.begin_nested():
                self.db.add(UploadChunk(**values))
        except IntegrityError:
            logger.debug("Chunk %s of session %s already recorded", values["chunk_index"], values["session_id"])
            return False
        return True

    async def find_chunk_row(self, session_id: int, chunk_index: int) -> ChunkRecord | None:
        result = await self.db.execute(
            select(UploadChunk).where(
                UploadChunk.session_id == session_id,
                UploadChunk.chunk_index == chunk_index,
            )
        )
        row = result.scalar_one_or_none()
        return _chunk_to_record(row) if row else None

    async def list_chunk_indices(self, session_id: int) -> list[int]:
        result = await self.db.execute(
            select(UploadChunk.chunk_index)
            .where(UploadChunk.session_id == session_id)
            .order_by(UploadChunk.chunk_index)
        )
        return list(result.scalars().all())

    async def delete_session(self, session_id: int) -> None:
        await self.db.execute(delete(UploadChunk).where(UploadChunk.session_id == session_id))
        await self.db.execute(delete(UploadSession).where(UploadSession.id == session_id))

    async def list_sessions(self, owner_id: str, status: str | None = None) -> list[SessionRecord]:
        query = select(UploadSession).where(UploadSession.owner_id == owner_id)
        if status:
            query = query.where(UploadSession.status == status)
        query = query.order_by(UploadSession.created_at.desc(), UploadSession.id.desc())
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return [_to_record(row) for row in result.scalars().all()]

    async def list_stale_sessions(self, older_than: datetime) -> list[SessionRecord]:
        result = await self.db.execute(
            select(UploadSession)
            .where(UploadSession.status.in_(ACTIVE_STATUSES), UploadSession.updated_at < older_than)
            .execution_options(populate_existing=True)
        )
        return [_to_record(row) for row in result.scalars().all()]

    async def commit(self) -> None:
        await self.db.commit()
