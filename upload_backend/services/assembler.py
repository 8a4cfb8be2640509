"""Assembler — concatenate staged chunks, in index order, into the final artifact."""

import logging
import os
import re
import shutil
from pathlib import Path

from upload_backend.services.chunk_store import ChunkStore
from upload_backend.services.errors import IOFailure
from upload_backend.services.repository import SessionRecord

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^\w.\- ]")


def safe_file_name(file_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(file_name.replace("\\", "/")).name).strip(" .")
    return name or "file"


class Assembler:
    def __init__(self, final_root: Path, chunk_store: ChunkStore):
        self.base = Path(final_root)
        self.base.mkdir(parents=True, exist_ok=True)
        self.chunk_store = chunk_store

    def final_path_for(self, upload_id: str, file_name: str) -> Path:
        return self.base / f"{upload_id}_{safe_file_name(file_name)}"

    def assemble(self, session: SessionRecord) -> Path:
        """Write chunks 0..total_chunks-1 into the final artifact.

        Every chunk is checked for presence and exact length before it is
        copied. On any failure the partial output is deleted. The staging area
        is left in place either way; the caller removes it once completion is
        recorded.
        """
        final_path = self.final_path_for(session.upload_id, session.file_name)
        partial = final_path.with_name(final_path.name + ".partial")

        try:
            with open(partial, "wb") as out:
                for index in range(session.total_chunks):
                    expected = session.expected_chunk_size(index)
                    actual = self.chunk_store.chunk_size(session.upload_id, index)
                    if actual is None:
                        raise IOFailure(f"Chunk {index} is missing from the staging area")
                    if actual != expected:
                        raise IOFailure(f"Chunk {index} has {actual} bytes, expected {expected}")
                    with self.chunk_store.open_chunk(session.upload_id, index) as src:
                        shutil.copyfileobj(src, out, COPY_BUFFER_SIZE)
                written = out.tell()

            if written != session.file_size:
                raise IOFailure(f"Assembled {written} bytes, expected {session.file_size}")
            os.replace(partial, final_path)
        except IOFailure:
            partial.unlink(missing_ok=True)
            raise
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise IOFailure(f"Failed to assemble upload {session.upload_id}: {e}") from e

        logger.info(
            "Assembled upload %s (%d chunks, %d bytes) into %s",
            session.upload_id, session.total_chunks, session.file_size, final_path,
        )

        return final_path
