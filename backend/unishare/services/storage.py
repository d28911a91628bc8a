from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from unishare.core.errors import ChunkMissing

logger = logging.getLogger(__name__)

_CHUNK_NAME = re.compile(r"^chunk_(\d+)\.part$")
MERGED_FILENAME = "merged.bin"


class ChunkStore:
    """Staging area for chunks, laid out as ``<root>/<user>/<token>/chunk_NNNNNNNN.part``."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def ensure_base_dirs(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, user_id: str, session_token: str) -> Path:
        return self._root / user_id / session_token

    def chunk_path(self, user_id: str, session_token: str, index: int) -> Path:
        return self.session_dir(user_id, session_token) / f"chunk_{index:08d}.part"

    def merged_path(self, user_id: str, session_token: str) -> Path:
        return self.session_dir(user_id, session_token) / MERGED_FILENAME

    async def write_chunk(self, user_id: str, session_token: str, index: int, data: bytes) -> bool:
        """Store a chunk unless it is already present.

        Returns ``False`` when the chunk existed, so retries do not count twice.
        The write goes through a temp file and ``os.replace`` so a reader never
        sees a half-written chunk.
        """
        path = self.chunk_path(user_id, session_token, index)

        def _write() -> bool:
            if path.exists():
                return False
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".incoming-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return True

        written = await asyncio.to_thread(_write)
        if not written:
            logger.info("Chunk %s for upload %s already exists, skipping", index, session_token)
        return written

    async def received_indices(self, user_id: str, session_token: str) -> list[int]:
        session_dir = self.session_dir(user_id, session_token)

        def _scan() -> list[int]:
            if not session_dir.is_dir():
                return []
            indices = []
            for entry in session_dir.iterdir():
                match = _CHUNK_NAME.match(entry.name)
                if match:
                    indices.append(int(match.group(1)))
            return sorted(indices)

        return await asyncio.to_thread(_scan)

    async def merge_all(self, user_id: str, session_token: str, total_chunks: int) -> tuple[Path, int]:
        """Concatenate chunks ``0..total_chunks-1`` in order into the merged file.

        Raises ``ChunkMissing`` for the first absent index; the partial output
        is removed before raising.
        """
        session_dir = self.session_dir(user_id, session_token)
        target_path = self.merged_path(user_id, session_token)

        def _merge() -> int:
            for index in range(total_chunks):
                if not (session_dir / f"chunk_{index:08d}.part").is_file():
                    raise ChunkMissing(index)
            byte_count = 0
            try:
                with open(target_path, "wb") as out_handle:
                    for index in range(total_chunks):
                        chunk_path = session_dir / f"chunk_{index:08d}.part"
                        try:
                            in_handle = open(chunk_path, "rb")
                        except FileNotFoundError as exc:
                            raise ChunkMissing(index) from exc
                        with in_handle:
                            while True:
                                chunk = in_handle.read(1024 * 1024)
                                if not chunk:
                                    break
                                out_handle.write(chunk)
                                byte_count += len(chunk)
            except BaseException:
                target_path.unlink(missing_ok=True)
                raise
            return byte_count

        size = await asyncio.to_thread(_merge)
        return target_path, size

    async def cleanup(self, user_id: str, session_token: str) -> None:
        session_dir = self.session_dir(user_id, session_token)

        def _cleanup() -> None:
            try:
                shutil.rmtree(session_dir)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove chunks of upload %s: %s", session_token, exc)
            try:
                session_dir.parent.rmdir()
            except OSError:
                pass  # other sessions of the same user still staged

        await asyncio.to_thread(_cleanup)
