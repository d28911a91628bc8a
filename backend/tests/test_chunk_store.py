from __future__ import annotations

import pytest

from unishare.core.errors import ChunkMissing


class TestChunkStore:
    async def test_write_chunk_is_idempotent(self, chunk_store):
        assert await chunk_store.write_chunk("u1", "tok", 0, b"first") is True
        assert await chunk_store.write_chunk("u1", "tok", 0, b"second") is False
        assert chunk_store.chunk_path("u1", "tok", 0).read_bytes() == b"first"

    async def test_received_indices_are_sorted(self, chunk_store):
        for index in (2, 0, 5):
            await chunk_store.write_chunk("u1", "tok", index, b"x")
        assert await chunk_store.received_indices("u1", "tok") == [0, 2, 5]

    async def test_received_indices_beyond_eight_digits(self, chunk_store):
        await chunk_store.write_chunk("u1", "tok", 99_999_999, b"x")
        await chunk_store.write_chunk("u1", "tok", 100_000_000, b"y")
        assert await chunk_store.received_indices("u1", "tok") == [99_999_999, 100_000_000]

    async def test_received_indices_of_unknown_session(self, chunk_store):
        assert await chunk_store.received_indices("u1", "nothing-here") == []

    async def test_merge_concatenates_in_index_order(self, chunk_store):
        await chunk_store.write_chunk("u1", "tok", 1, b"world")
        await chunk_store.write_chunk("u1", "tok", 0, b"hello ")
        path, size = await chunk_store.merge_all("u1", "tok", 2)
        assert path.read_bytes() == b"hello world"
        assert size == 11

    async def test_merge_reports_first_missing_chunk(self, chunk_store):
        await chunk_store.write_chunk("u1", "tok", 0, b"a")
        await chunk_store.write_chunk("u1", "tok", 2, b"c")
        with pytest.raises(ChunkMissing) as excinfo:
            await chunk_store.merge_all("u1", "tok", 3)
        assert excinfo.value.index == 1
        assert not chunk_store.merged_path("u1", "tok").exists()

    async def test_cleanup_removes_session_and_empty_user_dir(self, chunk_store):
        await chunk_store.write_chunk("u1", "tok", 0, b"a")
        await chunk_store.cleanup("u1", "tok")
        assert not chunk_store.session_dir("u1", "tok").exists()
        assert not (chunk_store.root / "u1").exists()

    async def test_cleanup_keeps_other_sessions_of_user(self, chunk_store):
        await chunk_store.write_chunk("u1", "tok-a", 0, b"a")
        await chunk_store.write_chunk("u1", "tok-b", 0, b"b")
        await chunk_store.cleanup("u1", "tok-a")
        assert chunk_store.chunk_path("u1", "tok-b", 0).exists()

    async def test_cleanup_of_missing_session_is_noop(self, chunk_store):
        await chunk_store.cleanup("u1", "never-staged")
