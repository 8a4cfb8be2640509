"""Chunk store — keyed blob storage for chunk payloads inside per-upload staging areas."""

import logging
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from upload_backend.services.errors import InvalidArgument, IOFailure

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ChunkStore:
    """Stores chunk payloads on the local filesystem under ``temp_root/<upload_id>/``.

    Methods are blocking; callers on the event loop run them in a thread.
    """

    def __init__(self, temp_root: Path):
        self.base = Path(temp_root)
        self.base.mkdir(parents=True, exist_ok=True)

    def area_path(self, upload_id: str) -> Path:
        if not _SAFE_ID.match(upload_id):
            raise InvalidArgument(f"Malformed upload id: {upload_id!r}")
        return self.base / upload_id

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.area_path(upload_id) / f"chunk_{chunk_index}"

    def create_area(self, upload_id: str) -> Path:
        area = self.area_path(upload_id)
        try:
            area.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"Could not create staging area for upload {upload_id}: {e}") from e
        return area

    def area_exists(self, upload_id: str) -> bool:
        return self.area_path(upload_id).is_dir()

    def write_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> int:
        """Write a chunk payload. Rewriting an index replaces the previous payload."""
        staged = self.stage_chunk(upload_id, chunk_index, data)
        self.promote_chunk(staged, upload_id, chunk_index)
        return len(data)

    def stage_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> Path:
        """Durably write a payload to a private temp file next to its final slot.

        Nothing is visible under ``chunk_<index>`` until ``promote_chunk`` runs,
        so concurrent attempts at one index never overwrite each other.
        """
        area = self.area_path(upload_id)
        if not area.is_dir():
            raise IOFailure(f"Staging area for upload {upload_id} no longer exists")

        tmp = area / f".chunk_{chunk_index}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise IOFailure(f"Failed to write chunk {chunk_index} of upload {upload_id}: {e}") from e
        return tmp

    def promote_chunk(self, staged: Path, upload_id: str, chunk_index: int) -> None:
        try:
            os.replace(staged, self.chunk_path(upload_id, chunk_index))
        except OSError as e:
            staged.unlink(missing_ok=True)
            raise IOFailure(f"Failed to store chunk {chunk_index} of upload {upload_id}: {e}") from e

    def discard_staged(self, staged: Path) -> None:
        try:
            staged.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to discard staged chunk %s: %s", staged, e)

    def read_chunk(self, upload_id: str, chunk_index: int) -> bytes:
        try:
            return self.chunk_path(upload_id, chunk_index).read_bytes()
        except OSError as e:
            raise IOFailure(f"Failed to read chunk {chunk_index} of upload {upload_id}: {e}") from e

    def open_chunk(self, upload_id: str, chunk_index: int) -> BinaryIO:
        try:
            return open(self.chunk_path(upload_id, chunk_index), "rb")
        except OSError as e:
            raise IOFailure(f"Failed to open chunk {chunk_index} of upload {upload_id}: {e}") from e

    def chunk_size(self, upload_id: str, chunk_index: int) -> int | None:
        """Stored byte length of a chunk, or None if it is not present."""
        try:
            return self.chunk_path(upload_id, chunk_index).stat().st_size
        except FileNotFoundError:
            return None

    def remove_area(self, upload_id: str) -> None:
        area = self.area_path(upload_id)
        if area.exists():
            shutil.rmtree(area)
            logger.info("Removed staging area for upload %s", upload_id)

    def list_areas(self) -> list[str]:
        if not self.base.exists():
            return []
        return sorted(item.name for item in self.base.iterdir() if item.is_dir())
