"""
Drop Store - durable per-owner cache of issued drops

Maps owner_account -> ordered list of Drop, addressed by the storage key
"__drops_" + owner_account. The ledger is the source of truth for whether a
drop holds funds; this store is only the index of keys we issued.

Every operation is a whole-list read-modify-write. Two coroutines mutating
the same owner's list can lose an update if they interleave, so every
caller that mutates or reconciles an owner's list MUST hold lock(owner):

    async with store.lock(owner):
        await store.add(owner, drop)

The store methods do not take the lock themselves; protocols hold it across
multi-step sequences (add -> register -> compensate) that must not interleave
with a reconciliation pass.
"""

import os
import json
import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .constants import STORAGE_KEY_PREFIX
from .errors import StorageError

logger = logging.getLogger("neardrop.store")


@dataclass
class Drop:
    public_key: str
    secret_key: str
    amount: int                    # yoctoNEAR at funding time (advisory, ledger is truth)
    limited: bool = False          # True = multisig-claim only
    owner_account: str = ""
    # Derived on every reconciliation, never persisted
    wallet_link: str = field(default="", compare=False)

    def to_record(self) -> dict:
        """Serialized form. Amount is a string: u128 does not fit a JS number."""
        return {
            "public_key": self.public_key,
            "secret_key": self.secret_key,
            "amount": str(self.amount),
            "limited": self.limited,
        }

    @classmethod
    def from_record(cls, record: dict, owner_account: str) -> "Drop":
        return cls(
            public_key=record["public_key"],
            secret_key=record["secret_key"],
            amount=int(record.get("amount", 0)),
            limited=bool(record.get("limited", False)),
            owner_account=owner_account,
        )


class RemoveResult(Enum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"


def storage_key(owner_account: str) -> str:
    return STORAGE_KEY_PREFIX + owner_account


# ============================================================
# BACKENDS
# ============================================================

class StorageBackend(ABC):
    """Async key -> list[dict] medium."""

    @abstractmethod
    async def get(self, key: str) -> Optional[list]:
        ...

    @abstractmethod
    async def set(self, key: str, value: list) -> None:
        ...


class MemoryBackend(StorageBackend):
    """Process-local backend (tests, ephemeral runs)."""

    def __init__(self):
        self._data: dict[str, list] = {}

    async def get(self, key: str) -> Optional[list]:
        value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: list) -> None:
        self._data[key] = json.loads(json.dumps(value))


class JsonFileBackend(StorageBackend):
    """
    One JSON document holding every storage key.

    Writes go to a temp file then os.replace (atomic on the same filesystem),
    so a crash mid-write leaves the previous document intact.
    Blocking file I/O runs in the default executor.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read drop store {self.path}: {e}")
        if not isinstance(data, dict):
            raise StorageError(f"Drop store {self.path} is not a JSON object")
        return data

    def _write_all(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp", prefix="drops_"
            )
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, str(self.path))
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise StorageError(f"Failed to write drop store {self.path}: {e}")

    async def get(self, key: str) -> Optional[list]:
        data = await asyncio.get_running_loop().run_in_executor(None, self._read_all)
        return data.get(key)

    async def set(self, key: str, value: list) -> None:
        def _update():
            data = self._read_all()
            data[key] = value
            self._write_all(data)

        await asyncio.get_running_loop().run_in_executor(None, _update)


# ============================================================
# DROP STORE
# ============================================================

class DropStore:

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, owner: str) -> asyncio.Lock:
        """Per-owner mutual exclusion. Cross-owner operations never wait on each other."""
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        return lock

    async def load(self, owner: str) -> list[Drop]:
        """All drops for owner, oldest first. Absent key = empty list."""
        records = await self.backend.get(storage_key(owner))
        if not records:
            return []
        try:
            return [Drop.from_record(r, owner) for r in records]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Corrupt drop record for {owner}: {e}")

    async def _save(self, owner: str, drops: list[Drop]) -> None:
        await self.backend.set(storage_key(owner), [d.to_record() for d in drops])

    async def get(self, owner: str, public_key: str) -> Optional[Drop]:
        for drop in await self.load(owner):
            if drop.public_key == public_key:
                return drop
        return None

    async def add(self, owner: str, drop: Drop) -> None:
        drops = await self.load(owner)
        drop.owner_account = owner
        drops.append(drop)
        await self._save(owner, drops)
        logger.info(f"Drop stored: {drop.public_key[:8]}... for {owner} ({len(drops)} total)")

    async def remove(self, owner: str, public_key: str) -> RemoveResult:
        """Remove the first entry with public_key. Absent key is NOT_FOUND, store untouched."""
        drops = await self.load(owner)
        index = next(
            (i for i, d in enumerate(drops) if d.public_key == public_key), None
        )
        if index is None:
            logger.debug(f"Remove skipped: {public_key[:8]}... not stored for {owner}")
            return RemoveResult.NOT_FOUND
        del drops[index]
        await self._save(owner, drops)
        logger.info(f"Drop removed: {public_key[:8]}... for {owner} ({len(drops)} left)")
        return RemoveResult.REMOVED

    async def clear(self, owner: str) -> None:
        await self._save(owner, [])
        logger.warning(f"Drop store cleared for {owner}")
