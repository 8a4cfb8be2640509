"""
Periodic cleanup worker — expires abandoned upload sessions and removes orphaned
staging areas. Can be run as a cron job or scheduled task.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

from upload_backend.config import settings
from upload_backend.services.upload_service import UploadService

logger = logging.getLogger(__name__)


async def expire_stale_uploads(service: UploadService, max_age_hours: int) -> int:
    """Cancel active sessions untouched for ``max_age_hours``. Returns count cancelled."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    expired = 0

    for session in await service.repo.list_stale_sessions(cutoff):
        try:
            await service.cancel_upload(session.upload_id)
        except Exception as e:
            logger.warning("Failed to expire upload %s: %s", session.upload_id, e)
            continue
        expired += 1
        logger.info(
            "Expired stale upload %s (%d/%d chunks)",
            session.upload_id, session.uploaded_chunks, session.total_chunks,
        )

    return expired


async def sweep_orphan_staging(service: UploadService, max_age_hours: int) -> int:
    """Remove staging areas older than ``max_age_hours`` with no active session. Returns count removed."""
    store = service.chunk_store
    cutoff = time.time() - (max_age_hours * 3600)
    removed = 0

    for upload_id in store.list_areas():
        try:
            area = store.area_path(upload_id)
            if area.stat().st_mtime >= cutoff:
                continue
            session = await service.repo.get_session_by_upload_id(upload_id)
            if session is not None and not session.is_terminal:
                continue
            store.remove_area(upload_id)
            removed += 1
        except Exception as e:
            logger.warning("Failed to clean staging area %s: %s", upload_id, e)

    return removed


async def cleanup_uploads(max_age_hours: int = settings.STALE_UPLOAD_MAX_AGE_HOURS) -> tuple[int, int]:
    from upload_backend.db.session import async_session_factory
    from upload_backend.dependencies import build_upload_service

    async with async_session_factory() as session:
        service = build_upload_service(session)
        expired = await expire_stale_uploads(service, max_age_hours)
        swept = await sweep_orphan_staging(service, max_age_hours)
        await session.commit()

    return expired, swept


def run_cleanup():
    """Synchronous entry point for running all cleanup tasks."""
    logger.info("Starting cleanup...")
    expired, swept = asyncio.run(cleanup_uploads())
    logger.info("Cleanup complete: %d stale uploads expired, %d orphan staging areas removed", expired, swept)
    return expired, swept


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_cleanup()
