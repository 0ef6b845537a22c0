import base64
import binascii
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

SNAPSHOT_VERSION = "1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_b64(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError(f"invalid base64 data: {e}") from e
    return value


# bytes in memory, base64 text in JSON
B64Bytes = Annotated[
    bytes,
    BeforeValidator(_decode_b64),
    PlainSerializer(lambda v: base64.b64encode(v).decode("ascii"), return_type=str, when_used="json"),
]


def _as_utc(value: datetime) -> datetime:
    # stamps written without an offset are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class StorageTarget(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    ALL = "all"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "github":
                return cls.REMOTE
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @classmethod
    def backends(cls) -> List["StorageTarget"]:
        """Concrete backends in default merge order (local before remote)."""
        return [cls.LOCAL, cls.REMOTE]

    def __str__(self) -> str:
        return self.value


class EncryptedData(BaseModel):
    ciphertext: B64Bytes
    nonce: B64Bytes
    salt: B64Bytes = b""


class Entry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    title: str
    # plain text, or an EncryptedData when double encryption was enabled at write time
    description: Union[EncryptedData, str] = ""
    tags: List[str] = Field(default_factory=list)
    username: str = ""
    encrypted_secret: EncryptedData
    url: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, tags: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Entry":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self

    @property
    def description_encrypted(self) -> bool:
        return isinstance(self.description, EncryptedData)


class EntryCreateRequest(BaseModel):
    title: str
    password: str
    username: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    url: Optional[str] = None


class EntryUpdateRequest(BaseModel):
    title: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    url: Optional[str] = None


class StorageMetadata(BaseModel):
    version: str = SNAPSHOT_VERSION
    last_sync: UtcDatetime = Field(default_factory=utcnow)
    entry_count: int = 0


class StorageSnapshot(BaseModel):
    metadata: StorageMetadata = Field(default_factory=StorageMetadata)
    entries: List[Entry] = Field(default_factory=list)

    def find(self, entry_id: UUID) -> Optional[Entry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def upsert(self, entry: Entry) -> None:
        for i, existing in enumerate(self.entries):
            if existing.id == entry.id:
                self.entries[i] = entry
                return
        self.entries.append(entry)

    def remove(self, entry_id: UUID) -> bool:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.id != entry_id]
        return len(self.entries) != before

    def touch(self) -> None:
        self.metadata.version = SNAPSHOT_VERSION
        self.metadata.entry_count = len(self.entries)
        self.metadata.last_sync = utcnow()


class StorageStatus(BaseModel):
    enabled: bool
    connected: bool
    entry_count: int = 0
    last_sync: Optional[datetime] = None
    error: Optional[str] = None


class BackendFailure(BaseModel):
    code: str
    message: str


class WriteResult(BaseModel):
    """Outcome of a write fanned out to several backends.

    Nothing is rolled back: ``succeeded`` backends hold the change, ``failed``
    ones need a retry or a sync.
    """

    entry: Optional[Entry] = None
    succeeded: List[StorageTarget] = Field(default_factory=list)
    failed: Dict[StorageTarget, BackendFailure] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class MergedView(BaseModel):
    """Entries read from one backend, or merged from every enabled one.

    A backend that could not be read is listed in ``failed`` and its entries
    are missing from ``entries``.
    """

    entries: List[Entry] = Field(default_factory=list)
    failed: Dict[StorageTarget, BackendFailure] = Field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


class EntryLookup(BaseModel):
    entry: Entry
    # backends ranked above the one that answered but unreadable at the time
    failed: Dict[StorageTarget, BackendFailure] = Field(default_factory=dict)


class SyncReport(BaseModel):
    source: StorageTarget
    target: StorageTarget
    added: List[UUID] = Field(default_factory=list)
    updated: List[UUID] = Field(default_factory=list)
    skipped: List[UUID] = Field(default_factory=list)
    committed: bool = False
    error: Optional[str] = None

    @property
    def changed(self) -> int:
        return len(self.added) + len(self.updated)


class GeneratorConfig(BaseModel):
    length: int = 16
    exclude_chars: Optional[str] = None
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_symbols: bool = True
