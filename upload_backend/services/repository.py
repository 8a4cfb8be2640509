"""Session repository — durable bookkeeping for upload sessions and their chunks.

The coordinator only talks to ``SessionRepository``. Two implementations exist:
``InMemorySessionRepository`` here (tests, single-process use) and
``SqlAlchemySessionRepository`` in ``sql_repository``.
"""

import asyncio
import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from upload_backend.services.errors import InvalidState

ACTIVE_STATUSES = ("pending", "uploading")
TERMINAL_STATUSES = ("completed", "cancelled")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    upload_id: str
    owner_id: str
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: int
    mime_type: str | None = None
    uploaded_chunks: int = 0
    status: str = "pending"
    temp_path: str | None = None
    final_path: str | None = None
    metadata: dict | None = None
    error_message: str | None = None
    id: int | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float:
        if self.total_chunks <= 0:
            return 0.0
        return self.uploaded_chunks / self.total_chunks * 100

    def expected_chunk_size(self, chunk_index: int) -> int:
        """Byte length chunk ``chunk_index`` must have; only the last may be short."""
        if chunk_index == self.total_chunks - 1:
            return self.file_size - self.chunk_size * (self.total_chunks - 1)
        return self.chunk_size


@dataclass
class ChunkRecord:
    session_id: int
    chunk_index: int
    chunk_size: int
    checksum: str | None = None
    uploaded_at: datetime = field(default_factory=_now)


class SessionRepository:
    """Persistence operations the upload coordinator relies on.

    ``insert_chunk_row`` is the atomic unit of the whole service: recording a
    chunk row and bumping ``uploaded_chunks`` must succeed or fail together,
    and at most one row may ever exist per ``(session_id, chunk_index)``.
    """

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        raise NotImplementedError

    async def get_session_by_upload_id(self, upload_id: str) -> SessionRecord | None:
        raise NotImplementedError

    async def update_session(
        self,
        session_id: int,
        fields: dict,
        only_if_status: tuple[str, ...] | None = None,
    ) -> SessionRecord | None:
        """Apply ``fields``; returns None when ``only_if_status`` did not match."""
        raise NotImplementedError

    async def insert_chunk_row(self, chunk: ChunkRecord) -> int | None:
        """Record a chunk and increment the session counter in one step.

        Returns the new ``uploaded_chunks`` value, or None if a row for the
        same index already existed. Raises ``InvalidState`` when the session
        has left the active states in the meantime.
        """
        raise NotImplementedError

    async def find_chunk_row(self, session_id: int, chunk_index: int) -> ChunkRecord | None:
        raise NotImplementedError

    async def list_chunk_indices(self, session_id: int) -> list[int]:
        raise NotImplementedError

    async def delete_session(self, session_id: int) -> None:
        raise NotImplementedError

    async def list_sessions(self, owner_id: str, status: str | None = None) -> list[SessionRecord]:
        raise NotImplementedError

    async def list_stale_sessions(self, older_than: datetime) -> list[SessionRecord]:
        """Active sessions not touched since ``older_than``."""
        raise NotImplementedError

    async def commit(self) -> None:
        """Make pending changes durable. No-op for stores without transactions."""


class InMemorySessionRepository(SessionRepository):
    def __init__(self) -> None:
        self.sessions: dict[int, SessionRecord] = {}
        self.chunks: dict[tuple[int, int], ChunkRecord] = {}
        self._ids = itertools.count(1)
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock(self, session_id: int) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        if any(s.upload_id == session.upload_id for s in self.sessions.values()):
            raise ValueError(f"Duplicate upload id: {session.upload_id}")
        stored = replace(session, id=next(self._ids))
        self.sessions[stored.id] = stored
        return replace(stored)

    async def get_session_by_upload_id(self, upload_id: str) -> SessionRecord | None:
        for session in self.sessions.values():
            if session.upload_id == upload_id:
                return replace(session)
        return None

    async def update_session(
        self,
        session_id: int,
        fields: dict,
        only_if_status: tuple[str, ...] | None = None,
    ) -> SessionRecord | None:
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if only_if_status is not None and session.status not in only_if_status:
                return None
            updated = replace(session, **fields, updated_at=_now())
            self.sessions[session_id] = updated
            return replace(updated)

    async def insert_chunk_row(self, chunk: ChunkRecord) -> int | None:
        async with self._lock(chunk.session_id):
            key = (chunk.session_id, chunk.chunk_index)
            if key in self.chunks:
                return None
            session = self.sessions.get(chunk.session_id)
            if session is None or session.status not in ACTIVE_STATUSES:
                raise InvalidState("Upload session is no longer accepting chunks")
            self.chunks[key] = replace(chunk)
            session.uploaded_chunks += 1
            session.status = "uploading"
            session.updated_at = _now()
            return session.uploaded_chunks

    async def find_chunk_row(self, session_id: int, chunk_index: int) -> ChunkRecord | None:
        chunk = self.chunks.get((session_id, chunk_index))
        return replace(chunk) if chunk else None

    async def list_chunk_indices(self, session_id: int) -> list[int]:
        return sorted(idx for (sid, idx) in self.chunks if sid == session_id)

    async def delete_session(self, session_id: int) -> None:
        self.sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        for key in [k for k in self.chunks if k[0] == session_id]:
            del self.chunks[key]

    async def list_sessions(self, owner_id: str, status: str | None = None) -> list[SessionRecord]:
        results = [s for s in self.sessions.values() if s.owner_id == owner_id]
        if status:
            results = [s for s in results if s.status == status]
        results.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return [replace(s) for s in results]

    async def list_stale_sessions(self, older_than: datetime) -> list[SessionRecord]:
        return [
            replace(s)
            for s in self.sessions.values()
            if s.status in ACTIVE_STATUSES and s.updated_at < older_than
        ]
