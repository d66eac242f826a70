"""
Inkwell Backend: Local Blob Store Tests
=======================================

What we test:
    ✅ put → exists → delete on a temporary root
    ✅ Deleting a missing blob is not an error
    ✅ Keys escaping the root are rejected
"""

import pytest

from inkwell.exceptions import ValidationError
from inkwell.services.blob_store import LocalBlobStore


class TestLocalBlobStore:

    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        self.root = tmp_path / "storage"
        self.store = LocalBlobStore(storage_root=str(self.root))

    @pytest.mark.asyncio
    async def test_put_exists_delete(self):
        key = "users/u1/notes/n1/assets/a1_scan.png"

        assert await self.store.exists(key) is False
        await self.store.put(key, b"\x89PNG")

        assert await self.store.exists(key) is True
        assert (self.root / key).read_bytes() == b"\x89PNG"

        await self.store.delete(key)
        assert await self.store.exists(key) is False

    @pytest.mark.asyncio
    async def test_delete_missing_blob(self):
        await self.store.delete("users/u1/notes/n1/assets/never_written.pdf")

    @pytest.mark.asyncio
    async def test_directory_is_not_a_blob(self):
        await self.store.put("users/u1/notes/n1/assets/a1.pdf", b"x")
        assert await self.store.exists("users/u1/notes/n1") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key",
        ["", "/etc/passwd", "../outside.txt", "users/../../outside.txt", "users/.."],
    )
    async def test_rejects_keys_outside_root(self, key):
        with pytest.raises(ValidationError):
            await self.store.exists(key)
        with pytest.raises(ValidationError):
            await self.store.put(key, b"x")
