import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from ciphervault.core.errors import StorageUnavailableError
from ciphervault.core.models import StorageSnapshot, StorageTarget

from .base import Storage, dump_snapshot, parse_snapshot

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Write-to-temp-then-rename, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class LocalStorage(Storage):
    """Snapshot kept as one JSON file on disk.

    A missing file loads as an empty snapshot when ``create_if_missing`` is
    set (first run), otherwise it is reported as unavailable.
    """

    target = StorageTarget.LOCAL

    def __init__(self, data_path: Union[str, Path], create_if_missing: bool = True):
        self.data_path = Path(data_path)
        self.create_if_missing = create_if_missing

    def load(self) -> StorageSnapshot:
        if not self.data_path.exists():
            if self.create_if_missing:
                return StorageSnapshot()
            raise StorageUnavailableError(f"Data file not found: {self.data_path}", self.target)
        try:
            content = self.data_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {self.data_path}: {e}", self.target) from e
        return parse_snapshot(content, self.target)

    def save(self, snapshot: StorageSnapshot) -> None:
        snapshot.touch()
        try:
            atomic_write_text(self.data_path, dump_snapshot(snapshot))
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {self.data_path}: {e}", self.target) from e
        logger.debug("Saved %d entries to %s", len(snapshot.entries), self.data_path)

    def test_connection(self) -> None:
        try:
            self.data_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Data directory is not usable: {e}", self.target) from e
        if self.data_path.exists() and not os.access(self.data_path, os.R_OK | os.W_OK):
            raise StorageUnavailableError(f"No read/write access to {self.data_path}", self.target)
        if not self.data_path.exists() and not self.create_if_missing:
            raise StorageUnavailableError(f"Data file not found: {self.data_path}", self.target)

    def __repr__(self) -> str:
        return f"LocalStorage({str(self.data_path)!r})"
