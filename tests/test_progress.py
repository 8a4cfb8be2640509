import asyncio
import json

from upload_backend.utils.progress import InMemoryProgressManager


def parse(event: str) -> dict:
    data_line = next(line for line in event.splitlines() if line.startswith("data: "))
    return json.loads(data_line[len("data: "):])


async def test_subscriber_receives_updates_until_completed():
    manager = InMemoryProgressManager()
    initial = {"status": "pending", "uploadedChunks": 0, "totalChunks": 2, "progress": 0.0}
    stream = manager.subscribe("u1", initial)

    first = await stream.__anext__()
    assert parse(first)["status"] == "pending"

    async def publish():
        await asyncio.sleep(0.01)
        manager.update("u1", "uploading", 1, 2)

    asyncio.create_task(publish())
    second = parse(await asyncio.wait_for(stream.__anext__(), timeout=1))
    assert second == {"status": "uploading", "uploadedChunks": 1, "totalChunks": 2, "progress": 50.0}

    async def finish():
        await asyncio.sleep(0.01)
        manager.update("u1", "completed", 2, 2)
        manager.remove("u1")

    asyncio.create_task(finish())
    last = parse(await asyncio.wait_for(stream.__anext__(), timeout=1))
    assert last["status"] == "completed"

    remaining = [e async for e in stream]
    assert remaining == []
    assert manager.get("u1") is None


async def test_terminal_initial_state_ends_stream_immediately():
    manager = InMemoryProgressManager()
    initial = {"status": "cancelled", "uploadedChunks": 1, "totalChunks": 3, "progress": 33.33}

    events = [e async for e in manager.subscribe("u2", initial)]

    assert len(events) == 1
    assert parse(events[0])["status"] == "cancelled"


async def test_keepalive_when_idle():
    manager = InMemoryProgressManager(keepalive_seconds=0.01)
    manager.update("u3", "uploading", 1, 4)
    stream = manager.subscribe("u3", {})

    await stream.__anext__()
    assert await stream.__anext__() == ": keepalive\n\n"
    await stream.aclose()
