"""
Progress broadcasting for chunked uploads.

Uses Redis pub/sub when available so every API worker can stream progress for
any upload. Falls back to an in-process asyncio Event mechanism when Redis is
unavailable.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncGenerator

logger = logging.getLogger(__name__)

TERMINAL = ("completed", "cancelled")


def _payload(status: str, uploaded_chunks: int, total_chunks: int) -> dict:
    progress = uploaded_chunks / total_chunks * 100 if total_chunks else 0.0
    return {
        "status": status,
        "uploadedChunks": uploaded_chunks,
        "totalChunks": total_chunks,
        "progress": round(progress, 2),
    }


def _format_event(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


# ── Redis-backed implementation ──────────────────────────────────────

class RedisProgressManager:
    """
    Progress tracker backed by Redis pub/sub + hash storage.
    Supports multiple API workers and multiple SSE subscribers.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._redis = None

    async def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def _channel(self, upload_id: str) -> str:
        return f"upload:{upload_id}:progress"

    def _hash_key(self, upload_id: str) -> str:
        return f"upload:{upload_id}:state"

    def update(self, upload_id: str, status: str, uploaded_chunks: int, total_chunks: int) -> None:
        import redis as sync_redis
        r = sync_redis.from_url(self._redis_url, decode_responses=True)
        data = _payload(status, uploaded_chunks, total_chunks)
        r.hset(self._hash_key(upload_id), mapping=data)
        r.publish(self._channel(upload_id), json.dumps(data))
        # Auto-expire state hash after 1 hour
        r.expire(self._hash_key(upload_id), 3600)
        r.close()

    def remove(self, upload_id: str) -> None:
        import redis as sync_redis
        r = sync_redis.from_url(self._redis_url, decode_responses=True)
        r.delete(self._hash_key(upload_id))
        r.close()

    async def subscribe(self, upload_id: str, initial: dict) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted progress events via Redis pub/sub."""
        r = await self._get_redis()

        state = await r.hgetall(self._hash_key(upload_id))
        if state:
            current = _payload(
                state.get("status", initial["status"]),
                int(state.get("uploadedChunks", 0)),
                int(state.get("totalChunks", initial["totalChunks"])),
            )
        else:
            current = initial
        yield _format_event("progress", current)
        if current["status"] in TERMINAL:
            return

        pubsub = r.pubsub()
        await pubsub.subscribe(self._channel(upload_id))

        try:
            while True:
                msg = await asyncio.wait_for(
                    pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0),
                    timeout=30.0,
                )
                if msg is None:
                    yield ": keepalive\n\n"
                    continue

                if msg["type"] == "message":
                    data = json.loads(msg["data"])
                    yield _format_event("progress", data)
                    if data.get("status") in TERMINAL:
                        break
        except asyncio.TimeoutError:
            yield ": keepalive\n\n"
        finally:
            await pubsub.unsubscribe(self._channel(upload_id))
            await pubsub.aclose()


# ── In-memory fallback ───────────────────────────────────────────────

@dataclass
class UploadProgressState:
    status: str = "pending"
    uploaded_chunks: int = 0
    total_chunks: int = 0
    event: asyncio.Event = field(default_factory=asyncio.Event)

    def as_dict(self) -> dict:
        return _payload(self.status, self.uploaded_chunks, self.total_chunks)


class InMemoryProgressManager:
    """In-memory progress tracker — single-process fallback."""

    def __init__(self, keepalive_seconds: float = 30.0):
        self._uploads: dict[str, UploadProgressState] = {}
        self._keepalive = keepalive_seconds

    def update(self, upload_id: str, status: str, uploaded_chunks: int, total_chunks: int) -> None:
        state = self._uploads.get(upload_id)
        if state is None:
            state = UploadProgressState()
            self._uploads[upload_id] = state
        state.status = status
        state.uploaded_chunks = uploaded_chunks
        state.total_chunks = total_chunks
        state.event.set()

    def get(self, upload_id: str) -> UploadProgressState | None:
        return self._uploads.get(upload_id)

    def remove(self, upload_id: str) -> None:
        self._uploads.pop(upload_id, None)

    async def subscribe(self, upload_id: str, initial: dict) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted progress events until the upload completes or is cancelled."""
        state = self._uploads.get(upload_id)
        if state is None:
            yield _format_event("progress", initial)
            if initial["status"] in TERMINAL:
                return
            state = UploadProgressState(
                status=initial["status"],
                uploaded_chunks=initial["uploadedChunks"],
                total_chunks=initial["totalChunks"],
            )
            self._uploads[upload_id] = state
        else:
            yield _format_event("progress", state.as_dict())
            if state.status in TERMINAL:
                return

        while True:
            state.event.clear()
            try:
                await asyncio.wait_for(state.event.wait(), timeout=self._keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            yield _format_event("progress", state.as_dict())

            if state.status in TERMINAL:
                break


# ── Singleton factory ────────────────────────────────────────────────

def _create_progress_manager() -> RedisProgressManager | InMemoryProgressManager:
    """Try Redis first; fall back to in-memory if unavailable."""
    from upload_backend.config import settings

    if settings.REDIS_URL:
        try:
            import redis as sync_redis
            r = sync_redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2)
            r.ping()
            r.close()
            logger.info("Progress manager: using Redis at %s", settings.REDIS_URL)
            return RedisProgressManager(settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis unavailable (%s), falling back to in-memory progress", e)

    logger.info("Progress manager: using in-memory fallback")
    return InMemoryProgressManager()


progress_manager = _create_progress_manager()
