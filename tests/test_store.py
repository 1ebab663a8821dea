"""
Tests for the drop store and its storage backends.
"""

import json

import pytest

from drops.errors import StorageError
from drops.keys import KeyGenerator
from drops.store import (
    Drop,
    DropStore,
    JsonFileBackend,
    MemoryBackend,
    RemoveResult,
    storage_key,
)

from conftest import OWNER, near


def _drop(amount=None, limited=False) -> Drop:
    pair = KeyGenerator().generate()
    return Drop(
        public_key=pair.public_key,
        secret_key=pair.secret_key,
        amount=amount if amount is not None else near(1),
        limited=limited,
    )


class TestDropStore:
    """Per-owner read-modify-write list."""

    async def test_absent_owner_is_empty(self, store):
        assert await store.load(OWNER) == []

    async def test_add_preserves_order(self, store):
        first, second = _drop(), _drop(limited=True)

        await store.add(OWNER, first)
        await store.add(OWNER, second)

        loaded = await store.load(OWNER)
        assert [d.public_key for d in loaded] == [first.public_key, second.public_key]
        assert loaded[1].limited is True
        assert all(d.owner_account == OWNER for d in loaded)

    async def test_owners_are_isolated(self, store):
        await store.add(OWNER, _drop())
        assert await store.load("bob.testnet") == []

    async def test_storage_key_and_record_format(self):
        backend = MemoryBackend()
        store = DropStore(backend)
        drop = _drop(amount=2 ** 100)

        await store.add(OWNER, drop)

        records = await backend.get("__drops_" + OWNER)
        assert storage_key(OWNER) == "__drops_alice.testnet"
        assert records == [{
            "public_key": drop.public_key,
            "secret_key": drop.secret_key,
            "amount": str(2 ** 100),
            "limited": False,
        }]

    async def test_get(self, store):
        drop = _drop()
        await store.add(OWNER, drop)

        assert await store.get(OWNER, drop.public_key) == drop
        assert await store.get(OWNER, "missing") is None

    async def test_remove(self, store):
        keep, gone = _drop(), _drop()
        await store.add(OWNER, keep)
        await store.add(OWNER, gone)

        assert await store.remove(OWNER, gone.public_key) is RemoveResult.REMOVED
        assert await store.load(OWNER) == [keep]

    async def test_remove_missing_leaves_store_unchanged(self, store):
        """Absent key is NOT_FOUND, never an exception."""
        await store.add(OWNER, _drop())
        before = await store.load(OWNER)

        assert await store.remove(OWNER, "unknown_pk") is RemoveResult.NOT_FOUND
        assert await store.remove("nobody.testnet", "unknown_pk") is RemoveResult.NOT_FOUND
        assert await store.load(OWNER) == before

    async def test_remove_takes_first_duplicate_only(self, store):
        drop = _drop()
        await store.add(OWNER, drop)
        await store.add(OWNER, Drop(drop.public_key, drop.secret_key, near(2)))

        await store.remove(OWNER, drop.public_key)

        remaining = await store.load(OWNER)
        assert len(remaining) == 1
        assert remaining[0].amount == near(2)

    async def test_clear(self, store):
        await store.add(OWNER, _drop())
        await store.clear(OWNER)
        assert await store.load(OWNER) == []

    async def test_corrupt_record_raises(self):
        backend = MemoryBackend()
        await backend.set(storage_key(OWNER), [{"public_key": "pk"}])

        with pytest.raises(StorageError):
            await DropStore(backend).load(OWNER)

    def test_lock_is_per_owner(self, store):
        assert store.lock(OWNER) is store.lock(OWNER)
        assert store.lock(OWNER) is not store.lock("bob.testnet")


class TestJsonFileBackend:
    """Durable single-document backend."""

    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "data" / "drops.json"
        drop = _drop(limited=True)
        await DropStore(JsonFileBackend(path)).add(OWNER, drop)

        reopened = DropStore(JsonFileBackend(path))

        assert await reopened.load(OWNER) == [drop]
        assert storage_key(OWNER) in json.loads(path.read_text())

    async def test_keeps_other_keys(self, tmp_path):
        path = tmp_path / "drops.json"
        store = DropStore(JsonFileBackend(path))
        await store.add(OWNER, _drop())
        await store.add("bob.testnet", _drop())

        assert len(await store.load(OWNER)) == 1
        assert len(await store.load("bob.testnet")) == 1

    async def test_no_temp_files_left(self, tmp_path):
        store = DropStore(JsonFileBackend(tmp_path / "drops.json"))
        await store.add(OWNER, _drop())
        assert [p.name for p in tmp_path.iterdir()] == ["drops.json"]

    async def test_corrupt_document_raises(self, tmp_path):
        path = tmp_path / "drops.json"
        path.write_text("{broken")

        with pytest.raises(StorageError):
            await DropStore(JsonFileBackend(path)).load(OWNER)

    async def test_non_object_document_raises(self, tmp_path):
        path = tmp_path / "drops.json"
        path.write_text("[]")

        with pytest.raises(StorageError):
            await DropStore(JsonFileBackend(path)).load(OWNER)
