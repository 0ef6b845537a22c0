"""
Shared fixtures.

Argon2 runs with tiny cost parameters here; production defaults would make
every unlock take a noticeable fraction of a second.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID, uuid4

import pytest

from ciphervault.client.commands import VaultCommands
from ciphervault.client.config import ConfigManager
from ciphervault.client.manager import PasswordManager
from ciphervault.core.crypto import CryptoService, KdfParams, MasterKey
from ciphervault.core.errors import ConflictError, StorageUnavailableError
from ciphervault.core.models import Entry, StorageSnapshot, StorageTarget
from ciphervault.storage.base import Storage

FAST_KDF = KdfParams(memory_cost=1024, time_cost=1, parallelism=1)
TEST_SALT = b"0123456789abcdef"

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class MemoryStorage(Storage):
    """In-memory backend whose failures can be switched on per test."""

    def __init__(self, target: StorageTarget, entries: Iterable[Entry] = ()):
        self.target = target
        self.snapshot = StorageSnapshot(entries=list(entries))
        self.snapshot.touch()
        self.fail = False
        self.conflict = False
        self.saves = 0

    def _check(self):
        if self.fail:
            raise StorageUnavailableError(f"{self.target} is unreachable", self.target)

    def load(self) -> StorageSnapshot:
        self._check()
        return self.snapshot.model_copy(deep=True)

    def save(self, snapshot: StorageSnapshot) -> None:
        self._check()
        if self.conflict:
            raise ConflictError("stale revision", self.target)
        snapshot.touch()
        self.snapshot = snapshot.model_copy(deep=True)
        self.saves += 1

    def test_connection(self) -> None:
        self._check()

    def ids(self):
        return [e.id for e in self.snapshot.entries]


@pytest.fixture(scope="session")
def key():
    return MasterKey.derive("correct-key", TEST_SALT, FAST_KDF)


@pytest.fixture(scope="session")
def wrong_key():
    return MasterKey.derive("wrong-key", TEST_SALT, FAST_KDF)


@pytest.fixture
def crypto():
    return CryptoService()


@pytest.fixture
def make_entry(key):
    service = CryptoService()

    def factory(title: str = "entry", entry_id: Optional[UUID] = None, minutes: int = 0,
                description: str = "", tags=(), secret: str = "secret") -> Entry:
        stamp = BASE_TIME + timedelta(minutes=minutes)
        return Entry(
            id=entry_id or uuid4(),
            title=title,
            description=description,
            tags=list(tags),
            username="user",
            encrypted_secret=service.encrypt_text(key, secret),
            created_at=BASE_TIME,
            updated_at=stamp,
        )

    return factory


@pytest.fixture
def local_storage():
    return MemoryStorage(StorageTarget.LOCAL)


@pytest.fixture
def remote_storage():
    return MemoryStorage(StorageTarget.REMOTE)


@pytest.fixture
def manager(local_storage, remote_storage, crypto):
    return PasswordManager(
        {StorageTarget.LOCAL: local_storage, StorageTarget.REMOTE: remote_storage},
        crypto,
    )


@pytest.fixture
def config_manager(tmp_path):
    cm = ConfigManager(tmp_path / "config.json")
    cm.update({"security": {"kdf": FAST_KDF.model_dump()}})
    return cm


@pytest.fixture
def commands(config_manager):
    return VaultCommands(config_manager)
