import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    SerializationInfo,
    ValidationError as PydanticValidationError,
    field_serializer,
    field_validator,
)

from ciphervault.core.crypto import KdfParams
from ciphervault.core.errors import ValidationError
from ciphervault.core.models import EncryptedData, StorageTarget
from ciphervault.storage.github import GITHUB_API_URL
from ciphervault.storage.local import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_DATA_FILENAME = "passwords.json"
MASKED_SECRET = "**********"


class LocalStorageConfig(BaseModel):
    enabled: bool = True
    # None means <data dir>/passwords.json
    file_path: Optional[str] = None


class RemoteStorageConfig(BaseModel):
    enabled: bool = False
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    file_path: str = DEFAULT_DATA_FILENAME
    api_url: str = GITHUB_API_URL
    token: Optional[SecretStr] = None
    timeout: float = 15

    @field_serializer("token", when_used="json")
    def _dump_token(self, token: Optional[SecretStr], info: SerializationInfo):
        if token is None:
            return None
        if info.context and info.context.get("reveal_secrets"):
            return token.get_secret_value()
        return MASKED_SECRET

    @property
    def is_configured(self) -> bool:
        return bool(self.owner and self.repo and self.token)


class StorageConfig(BaseModel):
    local: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    remote: RemoteStorageConfig = Field(default_factory=RemoteStorageConfig)
    # merge order: on conflicting ids the later backend wins
    priority: List[StorageTarget] = Field(default_factory=StorageTarget.backends)

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, priority: List[StorageTarget]) -> List[StorageTarget]:
        if StorageTarget.ALL in priority:
            raise ValueError("'all' is a selector, not a backend")
        if len(set(priority)) != len(priority):
            raise ValueError("priority lists a backend twice")
        return priority + [t for t in StorageTarget.backends() if t not in priority]

    def is_enabled(self, target: StorageTarget) -> bool:
        if target == StorageTarget.LOCAL:
            return self.local.enabled
        if target == StorageTarget.REMOTE:
            return self.remote.enabled
        return False


class SecurityConfig(BaseModel):
    double_encryption: bool = False
    kdf: KdfParams = Field(default_factory=KdfParams)


class AppConfig(BaseModel):
    version: int = 1
    kdf_salt: Optional[str] = None
    verification: Optional[EncryptedData] = None
    default_password_length: int = 16
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @property
    def is_first_setup(self) -> bool:
        return self.kdf_salt is None


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Loads and persists the user's AppConfig as one JSON file."""

    def __init__(self, config_path: Union[str, Path]):
        self.config_path = Path(config_path)
        self._lock = threading.Lock()
        self.config = self.load()

    @property
    def data_dir(self) -> Path:
        return self.config_path.parent

    def local_data_path(self) -> Path:
        file_path = self.config.storage.local.file_path
        return Path(file_path) if file_path else self.data_dir / DEFAULT_DATA_FILENAME

    def load(self) -> AppConfig:
        if not self.config_path.exists():
            logger.info("No config at %s, creating defaults", self.config_path)
            config = AppConfig()
            self._write(config)
            return config
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return AppConfig.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            # never fall back to defaults here: a fresh salt would orphan every ciphertext
            raise ValidationError(f"Cannot load config {self.config_path}: {e}") from e

    def save(self) -> None:
        with self._lock:
            self._write(self.config)

    def _write(self, config: AppConfig) -> None:
        content = config.model_dump_json(indent=2, context={"reveal_secrets": True})
        atomic_write_text(self.config_path, content)

    def public_view(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def update(self, patch: Dict[str, Any]) -> AppConfig:
        """Apply a partial update. Salt, verification token and KDF
        parameters are frozen once the vault is set up."""
        with self._lock:
            current = self.config.model_dump(mode="json", context={"reveal_secrets": True})
            merged = _deep_merge(current, patch)

            remote_patch = (patch.get("storage") or {}).get("remote") or {}
            # absent or masked keeps the stored token; an explicit None clears it
            if remote_patch.get("token", MASKED_SECRET) == MASKED_SECRET:
                merged["storage"]["remote"]["token"] = current["storage"]["remote"]["token"]

            if not self.config.is_first_setup:
                frozen = [
                    ("kdf_salt", merged.get("kdf_salt"), current["kdf_salt"]),
                    ("verification", merged.get("verification"), current["verification"]),
                    ("security.kdf", merged["security"].get("kdf"), current["security"]["kdf"]),
                ]
                for name, new, old in frozen:
                    if new != old:
                        raise ValidationError(f"'{name}' cannot be changed after setup")

            try:
                config = AppConfig.model_validate(merged)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid configuration: {e}") from e
            self._write(config)
            self.config = config
            logger.info("Configuration updated")
            return config

    def complete_setup(self, salt_b64: str, verification: EncryptedData) -> AppConfig:
        with self._lock:
            if not self.config.is_first_setup:
                raise ValidationError("Vault is already set up")
            config = self.config.model_copy(update={"kdf_salt": salt_b64, "verification": verification})
            self._write(config)
            self.config = config
            return config
