import os
import time
from datetime import datetime, timedelta, timezone

from upload_backend.workers.cleanup_worker import expire_stale_uploads, sweep_orphan_staging


def age(path, hours):
    old = time.time() - hours * 3600
    os.utime(path, (old, old))


async def test_expire_stale_uploads_cancels_only_old_active_sessions(service, repo, store):
    stale = await service.initiate_upload("owner-1", "old.bin", 100, chunk_size=100)
    fresh = await service.initiate_upload("owner-1", "new.bin", 100, chunk_size=100)
    done = await service.initiate_upload("owner-1", "done.bin", 100, chunk_size=100)
    await service.upload_chunk(done.upload_id, 0, b"x" * 100)
    await service.complete_upload(done.upload_id)

    long_ago = datetime.now(timezone.utc) - timedelta(hours=48)
    for upload_id in (stale.upload_id, done.upload_id):
        record = await repo.get_session_by_upload_id(upload_id)
        repo.sessions[record.id].updated_at = long_ago

    expired = await expire_stale_uploads(service, max_age_hours=24)

    assert expired == 1
    assert (await repo.get_session_by_upload_id(stale.upload_id)).status == "cancelled"
    assert (await repo.get_session_by_upload_id(fresh.upload_id)).status == "pending"
    assert (await repo.get_session_by_upload_id(done.upload_id)).status == "completed"
    assert not store.area_exists(stale.upload_id)
    assert store.area_exists(fresh.upload_id)


async def test_sweep_orphan_staging(service, store):
    live = await service.initiate_upload("owner-1", "live.bin", 100, chunk_size=100)
    orphan = store.create_area("orphan-area")
    recent_orphan = store.create_area("recent-orphan")
    age(orphan, 48)
    age(store.area_path(live.upload_id), 48)

    removed = await sweep_orphan_staging(service, max_age_hours=24)

    assert removed == 1
    assert not orphan.exists()
    assert recent_orphan.exists()
    assert store.area_exists(live.upload_id)
