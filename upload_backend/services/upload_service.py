"""Upload service — the resumable chunked upload state machine.

Sessions move pending -> uploading -> completed, or to cancelled from any
non-terminal state. Chunks may arrive in any order and may be retried; the
repository's atomic ``insert_chunk_row`` guarantees each index is counted once.
"""

import asyncio
import hashlib
import logging
import math
import uuid
import weakref
from concurrent.futures import Executor
from datetime import datetime, timezone

from upload_backend.services.assembler import Assembler
from upload_backend.services.chunk_store import ChunkStore
from upload_backend.services.errors import (
    ChecksumMismatch,
    IncompleteUpload,
    InvalidArgument,
    InvalidState,
    IOFailure,
    NotFound,
)
from upload_backend.services.repository import (
    ACTIVE_STATUSES,
    ChunkRecord,
    SessionRecord,
    SessionRepository,
)
from upload_backend.schemas.upload import (
    CancelUploadResponse,
    ChunkUploadResponse,
    CompleteUploadResponse,
    InitiateUploadResponse,
    UploadStatusResponse,
    UploadSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
MAX_CHUNK_SIZE = 64 * 1024 * 1024

# Hex digest length -> hashlib algorithm
CHECKSUM_ALGORITHMS = {32: "md5", 64: "sha256"}


class SessionLocks:
    """One asyncio.Lock per upload id, dropped once nobody holds a reference."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, upload_id: str) -> asyncio.Lock:
        lock = self._locks.get(upload_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[upload_id] = lock
        return lock


# Service instances are built per request, so completion locks live at module level.
completion_locks = SessionLocks()


def compute_checksum(data: bytes, algorithm: str = "md5") -> str:
    return hashlib.new(algorithm, data).hexdigest()


def verify_checksum(data: bytes, checksum: str) -> None:
    expected = checksum.strip().lower()
    algorithm = CHECKSUM_ALGORITHMS.get(len(expected))
    if algorithm is None:
        raise InvalidArgument("Checksum must be an MD5 (32 hex chars) or SHA-256 (64 hex chars) digest")
    actual = compute_checksum(data, algorithm)
    if actual != expected:
        raise ChecksumMismatch(
            "Checksum mismatch",
            details={"algorithm": algorithm, "expected": expected, "actual": actual},
        )


class UploadService:
    def __init__(
        self,
        repo: SessionRepository,
        chunk_store: ChunkStore,
        assembler: Assembler,
        progress=None,
        default_chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_chunk_size: int = MAX_CHUNK_SIZE,
        executor: Executor | None = None,
        locks: SessionLocks = completion_locks,
    ):
        self.repo = repo
        self.chunk_store = chunk_store
        self.assembler = assembler
        self.progress = progress
        self.default_chunk_size = default_chunk_size
        self.max_chunk_size = max_chunk_size
        self.executor = executor
        self.locks = locks

    # ── Lookups ──────────────────────────────────────────────

    async def _get_session(self, upload_id: str, owner_id: str | None = None) -> SessionRecord:
        session = await self.repo.get_session_by_upload_id(upload_id)
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise NotFound("Upload session not found")
        return session

    @staticmethod
    def _ensure_active(session: SessionRecord) -> None:
        if session.status == "completed":
            raise InvalidState("Upload already completed")
        if session.status == "cancelled":
            raise InvalidState("Upload was cancelled")

    def _publish(self, session: SessionRecord) -> None:
        if self.progress is None:
            return
        try:
            self.progress.update(session.upload_id, session.status, session.uploaded_chunks, session.total_chunks)
            if session.is_terminal:
                self.progress.remove(session.upload_id)
        except Exception as e:
            logger.warning("Failed to publish progress for %s: %s", session.upload_id, e)

    # ── Operations ───────────────────────────────────────────

    async def initiate_upload(
        self,
        owner_id: str,
        file_name: str,
        file_size: int,
        mime_type: str | None = None,
        chunk_size: int | None = None,
        metadata: dict | None = None,
    ) -> InitiateUploadResponse:
        """Open a new upload session and its staging area."""
        if file_size <= 0:
            raise InvalidArgument("fileSize must be greater than 0")
        if not file_name or not file_name.strip():
            raise InvalidArgument("fileName must not be empty")
        if chunk_size is None:
            chunk_size = self.default_chunk_size
        if chunk_size <= 0:
            raise InvalidArgument("chunkSize must be greater than 0")
        if chunk_size > self.max_chunk_size:
            raise InvalidArgument(f"chunkSize must not exceed {self.max_chunk_size} bytes")

        upload_id = str(uuid.uuid4())
        total_chunks = math.ceil(file_size / chunk_size)
        temp_path = await asyncio.to_thread(self.chunk_store.create_area, upload_id)

        try:
            session = await self.repo.create_session(
                SessionRecord(
                    upload_id=upload_id,
                    owner_id=owner_id,
                    file_name=file_name,
                    file_size=file_size,
                    mime_type=mime_type,
                    chunk_size=chunk_size,
                    total_chunks=total_chunks,
                    status="pending",
                    temp_path=str(temp_path),
                    metadata=metadata,
                )
            )
            await self.repo.commit()
        except Exception:
            await asyncio.to_thread(self.chunk_store.remove_area, upload_id)
            raise

        logger.info(
            "Initiated upload %s for %s (%d bytes, %d chunks of %d)",
            upload_id, file_name, file_size, total_chunks, chunk_size,
        )
        self._publish(session)
        return InitiateUploadResponse(upload_id=upload_id, chunk_size=chunk_size, total_chunks=total_chunks)

    async def upload_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        payload: bytes,
        checksum: str | None = None,
        owner_id: str | None = None,
    ) -> ChunkUploadResponse:
        """Store one chunk. Re-sending an already stored index is a no-op success."""
        session = await self._get_session(upload_id, owner_id)
        self._ensure_active(session)

        if not 0 <= chunk_index < session.total_chunks:
            raise InvalidArgument(
                f"Invalid chunk index {chunk_index}; must be between 0 and {session.total_chunks - 1}"
            )

        if await self.repo.find_chunk_row(session.id, chunk_index) is not None:
            return self._already_uploaded(session, chunk_index)

        expected = session.expected_chunk_size(chunk_index)
        if len(payload) != expected:
            raise InvalidArgument(
                f"Chunk {chunk_index} must be {expected} bytes, got {len(payload)}",
                details={"expected": expected, "received": len(payload)},
            )

        if checksum:
            try:
                verify_checksum(payload, checksum)
            except ChecksumMismatch:
                logger.warning("Rejected chunk %d of upload %s: checksum mismatch", chunk_index, upload_id)
                raise

        try:
            staged = await asyncio.to_thread(self.chunk_store.stage_chunk, upload_id, chunk_index, payload)
        except IOFailure as e:
            await self._raise_if_terminal(upload_id, chunk_index, e)
            raise

        # Only the attempt that wins the row may move its bytes into place.
        try:
            uploaded = await self.repo.insert_chunk_row(
                ChunkRecord(
                    session_id=session.id,
                    chunk_index=chunk_index,
                    chunk_size=len(payload),
                    checksum=checksum.strip().lower() if checksum else None,
                )
            )
            if uploaded is not None:
                await asyncio.to_thread(self.chunk_store.promote_chunk, staged, upload_id, chunk_index)
        except IOFailure as e:
            await self._raise_if_terminal(upload_id, chunk_index, e)
            raise
        except Exception:
            await asyncio.to_thread(self.chunk_store.discard_staged, staged)
            raise
        await self.repo.commit()

        if uploaded is None:
            # A concurrent request stored the same index first.
            await asyncio.to_thread(self.chunk_store.discard_staged, staged)
            latest = await self._get_session(upload_id)
            return self._already_uploaded(latest, chunk_index)

        session.uploaded_chunks = uploaded
        session.status = "uploading"
        logger.info("Stored chunk %d/%d of upload %s", chunk_index + 1, session.total_chunks, upload_id)
        self._publish(session)

        return ChunkUploadResponse(
            chunk_index=chunk_index,
            uploaded_chunks=uploaded,
            total_chunks=session.total_chunks,
            progress=session.progress,
        )

    async def _raise_if_terminal(self, upload_id: str, chunk_index: int, error: IOFailure) -> None:
        """A storage failure caused by a concurrent cancel surfaces as InvalidState."""
        latest = await self.repo.get_session_by_upload_id(upload_id)
        if latest is not None and latest.is_terminal:
            logger.warning("Chunk %d of upload %s arrived after %s: %s", chunk_index, upload_id, latest.status, error)
            self._ensure_active(latest)

    @staticmethod
    def _already_uploaded(session: SessionRecord, chunk_index: int) -> ChunkUploadResponse:
        return ChunkUploadResponse(
            chunk_index=chunk_index,
            uploaded_chunks=session.uploaded_chunks,
            total_chunks=session.total_chunks,
            progress=session.progress,
            already_uploaded=True,
        )

    async def complete_upload(self, upload_id: str, owner_id: str | None = None) -> CompleteUploadResponse:
        """Assemble all chunks into the final artifact.

        Calling this again after success returns the recorded final path
        without reassembling.
        """
        async with self.locks.get(upload_id):
            session = await self._get_session(upload_id, owner_id)

            if session.status == "completed":
                return self._completed(session)
            if session.status == "cancelled":
                raise InvalidState("Upload was cancelled")

            if session.uploaded_chunks != session.total_chunks:
                missing = await self._missing(session)
                raise IncompleteUpload(session.uploaded_chunks, session.total_chunks, missing)

            loop = asyncio.get_running_loop()
            try:
                final_path = await loop.run_in_executor(self.executor, self.assembler.assemble, session)
            except IOFailure as e:
                failed = await self.repo.update_session(
                    session.id,
                    {"error_message": e.message},
                    only_if_status=ACTIVE_STATUSES,
                )
                await self.repo.commit()
                if failed is None:
                    # Cancelled while assembling; the cancel took the staging area.
                    logger.info("Assembly of upload %s aborted by cancel: %s", upload_id, e.message)
                    raise InvalidState("Upload was cancelled") from e
                logger.error("Assembly failed for upload %s: %s", upload_id, e.message)
                raise

            completed = await self.repo.update_session(
                session.id,
                {
                    "status": "completed",
                    "final_path": str(final_path),
                    "temp_path": None,
                    "error_message": None,
                    "completed_at": datetime.now(timezone.utc),
                },
                only_if_status=ACTIVE_STATUSES,
            )
            await self.repo.commit()
            if completed is None:
                # Cancelled while assembling; the artifact has no owner session.
                final_path.unlink(missing_ok=True)
                raise InvalidState("Upload was cancelled")

            # Staging outlives assembly until the completed status is committed.
            try:
                await asyncio.to_thread(self.chunk_store.remove_area, upload_id)
            except OSError as e:
                logger.warning("Failed to remove staging area for completed upload %s: %s", upload_id, e)

        logger.info("Completed upload %s -> %s", upload_id, final_path)
        self._publish(completed)
        return self._completed(completed)

    @staticmethod
    def _completed(session: SessionRecord) -> CompleteUploadResponse:
        return CompleteUploadResponse(
            upload_id=session.upload_id,
            file_name=session.file_name,
            final_path=session.final_path,
            file_size=session.file_size,
        )

    async def cancel_upload(self, upload_id: str, owner_id: str | None = None) -> CancelUploadResponse:
        """Abandon an upload. Staging removal is best-effort."""
        session = await self._get_session(upload_id, owner_id)
        if session.status == "completed":
            raise InvalidState("Upload already completed")

        if session.status != "cancelled":
            cancelled = await self.repo.update_session(
                session.id,
                {"status": "cancelled", "temp_path": None},
                only_if_status=ACTIVE_STATUSES,
            )
            await self.repo.commit()
            if cancelled is None:
                latest = await self._get_session(upload_id)
                if latest.status != "cancelled":
                    raise InvalidState(f"Upload already {latest.status}")
            else:
                logger.info("Cancelled upload %s", upload_id)
                self._publish(cancelled)

        try:
            await asyncio.to_thread(self.chunk_store.remove_area, upload_id)
        except OSError as e:
            logger.warning("Failed to remove staging area for cancelled upload %s: %s", upload_id, e)

        return CancelUploadResponse(upload_id=upload_id)

    async def _missing(self, session: SessionRecord) -> list[int]:
        stored = set(await self.repo.list_chunk_indices(session.id))
        return [i for i in range(session.total_chunks) if i not in stored]

    async def get_missing_chunks(self, upload_id: str, owner_id: str | None = None) -> list[int]:
        """Sorted indices with no stored chunk; a client re-sends these to resume."""
        session = await self._get_session(upload_id, owner_id)
        return await self._missing(session)

    async def get_upload_status(self, upload_id: str, owner_id: str | None = None) -> UploadStatusResponse:
        session = await self._get_session(upload_id, owner_id)
        return UploadStatusResponse(
            upload_id=session.upload_id,
            file_name=session.file_name,
            file_size=session.file_size,
            mime_type=session.mime_type,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            uploaded_chunks=session.uploaded_chunks,
            status=session.status,
            progress=session.progress,
            missing_chunks=await self._missing(session),
            final_path=session.final_path,
            metadata=session.metadata,
            error_message=session.error_message,
            created_at=session.created_at,
            completed_at=session.completed_at,
        )

    async def list_uploads(self, owner_id: str, status: str | None = None) -> list[UploadSummary]:
        sessions = await self.repo.list_sessions(owner_id, status)
        return [
            UploadSummary(
                upload_id=s.upload_id,
                file_name=s.file_name,
                file_size=s.file_size,
                status=s.status,
                uploaded_chunks=s.uploaded_chunks,
                total_chunks=s.total_chunks,
                progress=s.progress,
                created_at=s.created_at,
            )
            for s in sessions
        ]
