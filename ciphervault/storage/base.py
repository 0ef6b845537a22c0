import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from ciphervault.core.errors import StorageUnavailableError, UnsupportedVersionError
from ciphervault.core.models import SNAPSHOT_VERSION, Entry, StorageSnapshot, StorageTarget


class Storage(ABC):
    """One backend holding a full snapshot of the vault.

    Implementations only know their own medium; merging and syncing across
    backends is the manager's job.
    """

    target: StorageTarget

    @abstractmethod
    def load(self) -> StorageSnapshot:
        ...

    @abstractmethod
    def save(self, snapshot: StorageSnapshot) -> None:
        ...

    @abstractmethod
    def test_connection(self) -> None:
        """Raise StorageUnavailableError if the backend cannot be reached."""

    def list(self) -> List[Entry]:
        return list(self.load().entries)

    def get_by_id(self, entry_id: UUID) -> Optional[Entry]:
        return self.load().find(entry_id)

    def search(self, query: str) -> List[Entry]:
        return search_entries(self.load().entries, query)

    def has_data(self) -> bool:
        return bool(self.load().entries)


def _relevance(entry: Entry, needle: str) -> int:
    score = 0
    title = entry.title.lower()
    if title == needle:
        score += 100
    elif title.startswith(needle):
        score += 60
    elif needle in title:
        score += 40

    tags = [t.lower() for t in entry.tags]
    if needle in tags:
        score += 30
    elif any(needle in t for t in tags):
        score += 20

    # a double-encrypted description is opaque
    if isinstance(entry.description, str) and needle in entry.description.lower():
        score += 10
    return score


def search_entries(entries: Iterable[Entry], query: str) -> List[Entry]:
    """Case-insensitive match on title, tags and plain descriptions.

    Ordered by relevance, then most recently updated. An empty query
    matches everything.
    """
    needle = query.strip().lower()
    scored = []
    for entry in entries:
        score = _relevance(entry, needle) if needle else 1
        if score > 0:
            scored.append((score, entry))
    scored.sort(key=lambda pair: (pair[0], pair[1].updated_at), reverse=True)
    return [entry for _, entry in scored]


def check_snapshot_version(data: Dict[str, Any]) -> Dict[str, Any]:
    """Check a raw snapshot document against SNAPSHOT_VERSION.

    Documents in the key/value layout of the earlier client ("passwords"
    map, "password_count") are refused whatever their version: their
    records hold the secret in clear or under a salt-less SHA-256 key, and
    neither can be turned into an ``encrypted_secret`` without the master key.
    """
    metadata = dict(data.get("metadata") or {})
    version = str(metadata.get("version", SNAPSHOT_VERSION))

    if "passwords" in data and "entries" not in data:
        passwords = data["passwords"]
        count = len(passwords) if isinstance(passwords, (dict, list)) else 0
        raise UnsupportedVersionError(
            f"Snapshot uses the key/value layout of the earlier client (version {version}, "
            f"{count} records); re-add those credentials through this vault"
        )

    if version != SNAPSHOT_VERSION:
        raise UnsupportedVersionError(f"Unsupported snapshot version: {version}")
    return data


def parse_snapshot(content: str, target: Optional[StorageTarget] = None) -> StorageSnapshot:
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageUnavailableError(f"Snapshot is not valid JSON: {e}", target) from e
    if not isinstance(raw, dict):
        raise StorageUnavailableError("Snapshot must be a JSON object", target)
    try:
        checked = check_snapshot_version(raw)
    except UnsupportedVersionError as e:
        e.target = target
        raise
    try:
        return StorageSnapshot.model_validate(checked)
    except PydanticValidationError as e:
        raise StorageUnavailableError(f"Snapshot is malformed: {e}", target) from e


def dump_snapshot(snapshot: StorageSnapshot) -> str:
    return snapshot.model_dump_json(indent=2)
