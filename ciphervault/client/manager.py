import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar
from uuid import UUID

from ciphervault.core.crypto import CryptoService, MasterKey
from ciphervault.core.errors import (
    NotFoundError,
    StorageError,
    StorageUnavailableError,
    ValidationError,
)
from ciphervault.core.models import (
    BackendFailure,
    Entry,
    EntryCreateRequest,
    EntryLookup,
    EntryUpdateRequest,
    MergedView,
    StorageSnapshot,
    StorageStatus,
    StorageTarget,
    SyncReport,
    WriteResult,
    utcnow,
)
from ciphervault.storage.base import Storage, search_entries

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backend:
    """One registered storage plus its lifecycle state.

    Disabled -> Enabled(disconnected) -> Enabled(connected); any I/O failure
    drops it back to disconnected until the next successful access.
    """

    def __init__(self, storage: Storage, enabled: bool = True):
        self.storage = storage
        self.enabled = enabled
        self.connected: Optional[bool] = None
        self.error: Optional[str] = None
        # operations on one backend are strictly ordered
        self.lock = threading.RLock()

    def mark_ok(self) -> None:
        self.connected = True
        self.error = None

    def mark_failed(self, error: StorageError) -> None:
        self.connected = False
        self.error = error.message


class PasswordManager:
    """Per-backend CRUD, priority merge and cross-backend sync.

    Backends are merged in ``priority`` order; when one id exists in several
    backends the one merged last wins. Writes go to every enabled backend and
    are never rolled back: the returned WriteResult says which ones failed.
    """

    def __init__(self, storages: Mapping[StorageTarget, Storage], crypto: CryptoService,
                 priority: Optional[Sequence[StorageTarget]] = None,
                 disabled: Iterable[StorageTarget] = ()):
        if StorageTarget.ALL in storages:
            raise ValidationError("'all' cannot be registered as a backend")
        disabled = set(disabled)
        self.crypto = crypto
        self._backends: Dict[StorageTarget, Backend] = {
            target: Backend(storage, enabled=target not in disabled)
            for target, storage in storages.items()
        }
        order = list(priority or StorageTarget.backends())
        order += [t for t in self._backends if t not in order]
        self.priority: List[StorageTarget] = [t for t in order if t in self._backends]

        self._write_lock = threading.RLock()
        # merged view, replaced wholesale (never mutated in place)
        self._cache: Optional[Dict[UUID, Entry]] = None

    # --- backend registry ---

    def enabled_targets(self) -> List[StorageTarget]:
        return [t for t in self.priority if self._backends[t].enabled]

    def backend(self, target: StorageTarget) -> Backend:
        if target == StorageTarget.ALL:
            raise ValidationError("'all' does not name a single backend")
        backend = self._backends.get(target)
        if backend is None:
            raise ValidationError(f"Storage backend '{target}' is not configured")
        return backend

    def set_enabled(self, target: StorageTarget, enabled: bool) -> None:
        backend = self.backend(target)
        backend.enabled = enabled
        if not enabled:
            backend.connected = None
            backend.error = None
        self._cache = None

    def _enabled_backend(self, target: StorageTarget) -> Backend:
        backend = self.backend(target)
        if not backend.enabled:
            raise ValidationError(f"Storage backend '{target}' is disabled")
        return backend

    def _call(self, target: StorageTarget, fn: Callable[[Storage], T]) -> T:
        backend = self._enabled_backend(target)
        with backend.lock:
            try:
                result = fn(backend.storage)
            except StorageError as e:
                if e.target is None:
                    e.target = target
                backend.mark_failed(e)
                logger.warning("Storage %s failed: [%s] %s", target, e.code, e.message)
                raise
            backend.mark_ok()
            return result

    def _load(self, target: StorageTarget) -> StorageSnapshot:
        return self._call(target, lambda storage: storage.load())

    def _write_targets(self, targets: Optional[Iterable[StorageTarget]]) -> List[StorageTarget]:
        if targets is None:
            selected = self.enabled_targets()
        else:
            targets = list(targets)
            if StorageTarget.ALL in targets:
                selected = self.enabled_targets()
            else:
                selected = [t for t in self.priority if t in targets]
                for t in targets:
                    self._enabled_backend(t)
        if not selected:
            raise ValidationError("No enabled storage backend to write to")
        return selected

    def _fan_out(self, targets: List[StorageTarget],
                 mutate: Callable[[StorageSnapshot], bool]) -> Tuple[WriteResult, List[StorageTarget]]:
        """Load-modify-save on each backend independently.

        ``mutate`` returns whether the snapshot changed; unchanged snapshots
        are not written back.
        """
        result = WriteResult()
        changed: List[StorageTarget] = []

        def apply(storage: Storage) -> bool:
            snapshot = storage.load()
            if not mutate(snapshot):
                return False
            storage.save(snapshot)
            return True

        for target in targets:
            try:
                if self._call(target, apply):
                    changed.append(target)
                result.succeeded.append(target)
            except StorageError as e:
                result.failed[target] = BackendFailure(code=e.code, message=e.message)
        return result, changed

    @staticmethod
    def _require_any_success(result: WriteResult, action: str) -> None:
        if result.succeeded:
            if result.failed:
                logger.warning("%s partially failed on: %s", action,
                               ", ".join(str(t) for t in result.failed))
            return
        details = "; ".join(f"{t}: {f.message}" for t, f in result.failed.items())
        error = StorageUnavailableError(f"{action} failed on every backend ({details})")
        error.result = result
        raise error

    # --- merged cache ---

    def _merge(self) -> Tuple[Dict[UUID, Entry], Dict[StorageTarget, BackendFailure]]:
        merged: Dict[UUID, Entry] = {}
        failed: Dict[StorageTarget, BackendFailure] = {}
        loaded = 0
        for target in self.enabled_targets():
            try:
                snapshot = self._load(target)
            except StorageError as e:
                failed[target] = BackendFailure(code=e.code, message=e.message)
                continue
            loaded += 1
            for entry in snapshot.entries:
                merged[entry.id] = entry
        if failed and not loaded:
            details = "; ".join(f"{t}: {f.message}" for t, f in failed.items())
            raise StorageUnavailableError(f"No storage backend could be loaded ({details})")
        if failed:
            logger.warning("Merged view is missing: %s", ", ".join(str(t) for t in failed))
        self._cache = merged
        return merged, failed

    def cached_entries(self) -> Optional[List[Entry]]:
        """Last merged view without touching any backend, or None if not built yet."""
        cache = self._cache
        return None if cache is None else list(cache.values())

    def _cache_put(self, entry: Entry) -> None:
        if self._cache is not None:
            cache = dict(self._cache)
            cache[entry.id] = entry
            self._cache = cache

    def _cache_drop(self, entry_id: UUID) -> None:
        if self._cache is not None:
            cache = dict(self._cache)
            cache.pop(entry_id, None)
            self._cache = cache

    # --- CRUD ---

    def add(self, key: MasterKey, request: EntryCreateRequest,
            targets: Optional[Iterable[StorageTarget]] = None) -> WriteResult:
        if not request.title.strip():
            raise ValidationError("Title is required")
        if not request.password:
            raise ValidationError("Password is required")

        now = utcnow()
        entry = Entry(
            title=request.title.strip(),
            description=self.crypto.encrypt_description(key, request.description),
            tags=request.tags,
            username=request.username,
            encrypted_secret=self.crypto.encrypt_text(key, request.password),
            url=request.url or None,
            created_at=now,
            updated_at=now,
        )

        with self._write_lock:
            selected = self._write_targets(targets)

            def insert(snapshot: StorageSnapshot) -> bool:
                snapshot.upsert(entry)
                return True

            result, _ = self._fan_out(selected, insert)
            result.entry = entry
            self._require_any_success(result, "Add")
            self._cache_put(entry)
        logger.info("Added entry %s to %s", entry.id, ", ".join(str(t) for t in result.succeeded))
        return result

    def update(self, key: MasterKey, entry_id: UUID, request: EntryUpdateRequest,
               targets: Optional[Iterable[StorageTarget]] = None) -> WriteResult:
        with self._write_lock:
            current = self.get_by_id(entry_id)
            changes = {}
            if request.title is not None:
                if not request.title.strip():
                    raise ValidationError("Title is required")
                changes["title"] = request.title.strip()
            if request.username is not None:
                changes["username"] = request.username
            if request.url is not None:
                changes["url"] = request.url or None
            if request.tags is not None:
                changes["tags"] = request.tags
            if request.description is not None:
                changes["description"] = self.crypto.encrypt_description(key, request.description)
            if request.password is not None:
                if not request.password:
                    raise ValidationError("Password is required")
                changes["encrypted_secret"] = self.crypto.encrypt_text(key, request.password)
            # strictly newer than the stored version, so last-write-wins sync picks it up
            changes["updated_at"] = max(utcnow(), current.updated_at + timedelta(microseconds=1))
            entry = Entry.model_validate({**current.model_dump(), **changes})

            selected = self._write_targets(targets)

            def replace(snapshot: StorageSnapshot) -> bool:
                snapshot.upsert(entry)
                return True

            result, _ = self._fan_out(selected, replace)
            result.entry = entry
            self._require_any_success(result, "Update")
            self._cache_put(entry)
        logger.info("Updated entry %s", entry.id)
        return result

    def delete(self, entry_id: UUID, targets: Optional[Iterable[StorageTarget]] = None) -> WriteResult:
        with self._write_lock:
            selected = self._write_targets(targets)
            result, removed_from = self._fan_out(selected, lambda snapshot: snapshot.remove(entry_id))
            if not removed_from:
                if result.failed:
                    self._require_any_success(WriteResult(failed=result.failed), "Delete")
                raise NotFoundError(f"Entry {entry_id} not found")
            self._cache_drop(entry_id)
        logger.info("Deleted entry %s from %s", entry_id, ", ".join(str(t) for t in removed_from))
        return result

    # --- queries ---

    def get_all(self, target: StorageTarget = StorageTarget.ALL) -> MergedView:
        if target == StorageTarget.ALL:
            merged, failed = self._merge()
            return MergedView(entries=list(merged.values()), failed=failed)
        return MergedView(entries=self._load(target).entries)

    def search(self, query: str, target: StorageTarget = StorageTarget.ALL) -> MergedView:
        if target == StorageTarget.ALL:
            # filter after merge so one id never shows up twice
            merged, failed = self._merge()
            return MergedView(entries=search_entries(merged.values(), query), failed=failed)
        return MergedView(entries=self._call(target, lambda storage: storage.search(query)))

    def lookup(self, entry_id: UUID, target: StorageTarget = StorageTarget.ALL) -> EntryLookup:
        """Find one entry; with ALL, also report the unreadable backends
        that could have held a newer-ranked copy."""
        if target != StorageTarget.ALL:
            entry = self._call(target, lambda storage: storage.get_by_id(entry_id))
            if entry is None:
                raise NotFoundError(f"Entry {entry_id} not found in {target}")
            return EntryLookup(entry=entry)

        # highest priority (merged last) first, which matches the merged view
        failed: Dict[StorageTarget, BackendFailure] = {}
        for candidate in reversed(self.enabled_targets()):
            try:
                entry = self._call(candidate, lambda storage: storage.get_by_id(entry_id))
            except StorageError as e:
                failed[candidate] = BackendFailure(code=e.code, message=e.message)
                continue
            if entry is not None:
                return EntryLookup(entry=entry, failed=failed)
        if failed:
            details = "; ".join(f"{t}: {f.message}" for t, f in failed.items())
            raise StorageUnavailableError(f"Entry {entry_id} not found in the readable backends ({details})")
        raise NotFoundError(f"Entry {entry_id} not found")

    def get_by_id(self, entry_id: UUID, target: StorageTarget = StorageTarget.ALL) -> Entry:
        return self.lookup(entry_id, target).entry

    # --- sync ---

    def sync_storages(self, source: StorageTarget, target: StorageTarget) -> SyncReport:
        """Copy ``source`` into ``target``, last write (``updated_at``) wins.

        Entries only present in ``target`` are left alone. The target is
        written once, atomically, and only if something changed.
        """
        if StorageTarget.ALL in (source, target):
            raise ValidationError("Sync needs two concrete backends")
        if source == target:
            raise ValidationError("Cannot sync a backend with itself")

        with self._write_lock:
            source_snapshot = self._load(source)
            report = SyncReport(source=source, target=target)
            backend = self._enabled_backend(target)
            with backend.lock:
                target_snapshot = self._load(target)
                for entry in source_snapshot.entries:
                    existing = target_snapshot.find(entry.id)
                    if existing is None:
                        target_snapshot.upsert(entry)
                        report.added.append(entry.id)
                    elif entry.updated_at > existing.updated_at:
                        target_snapshot.upsert(entry)
                        report.updated.append(entry.id)
                    else:
                        report.skipped.append(entry.id)

                if report.changed:
                    try:
                        self._call(target, lambda storage: storage.save(target_snapshot))
                    except StorageError as e:
                        report.error = e.message
                        e.report = report
                        raise
            report.committed = True
            self._cache = None

        logger.info("Synced %s -> %s: %d added, %d updated, %d skipped", source, target,
                    len(report.added), len(report.updated), len(report.skipped))
        return report

    # --- status ---

    def get_storage_status(self) -> Dict[StorageTarget, StorageStatus]:
        """Contact every backend now; nothing here is cached or persisted."""
        statuses: Dict[StorageTarget, StorageStatus] = {}
        for target in self.priority:
            backend = self._backends[target]
            if not backend.enabled:
                statuses[target] = StorageStatus(enabled=False, connected=False)
                continue

            def check(storage: Storage) -> StorageSnapshot:
                storage.test_connection()
                return storage.load()

            try:
                snapshot = self._call(target, check)
            except StorageError as e:
                statuses[target] = StorageStatus(enabled=True, connected=False, error=e.message)
                continue
            statuses[target] = StorageStatus(
                enabled=True,
                connected=True,
                entry_count=len(snapshot.entries),
                last_sync=snapshot.metadata.last_sync,
            )
        return statuses
