from typing import Any, Dict, Optional, Union
from uuid import UUID

import requests
from pydantic import ValidationError as PydanticValidationError

from ciphervault.core.crypto import CryptoService, MasterKey, decode_salt
from ciphervault.core.errors import ValidationError, VaultLockedError
from ciphervault.core.generator import generate_password
from ciphervault.core.models import (
    EncryptedData,
    EntryCreateRequest,
    EntryLookup,
    EntryUpdateRequest,
    GeneratorConfig,
    MergedView,
    StorageStatus,
    StorageTarget,
    SyncReport,
    WriteResult,
)

from .config import ConfigManager
from .session import VaultSession


def parse_target(value: Union[str, StorageTarget]) -> StorageTarget:
    try:
        return StorageTarget(value)
    except ValueError:
        raise ValidationError(f"Invalid storage target: {value!r}") from None


def parse_entry_id(value: Union[str, UUID]) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid entry id: {value!r}") from None


def _coerce(model, value):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


class VaultCommands:
    """The operations a host process (UI, HTTP bridge) can invoke.

    Holds at most one unlocked VaultSession; every command that touches
    entries needs ``initialize_manager`` first.
    """

    def __init__(self, config_manager: ConfigManager, http_session: Optional[requests.Session] = None):
        self.config_manager = config_manager
        self.http_session = http_session
        self.session: Optional[VaultSession] = None

    def _session(self) -> VaultSession:
        if self.session is None or not self.session.is_unlocked:
            raise VaultLockedError("Password manager not initialized")
        return self.session

    # --- session ---

    def initialize_manager(self, master_password: str) -> Dict[str, bool]:
        if self.session is not None:
            self.session.close()
            self.session = None
        self.session = VaultSession.open(self.config_manager, master_password, self.http_session)
        return {"is_first_setup": self.session.created_new_vault}

    def verify_master_password(self, secret: str) -> bool:
        config = self.config_manager.config
        if config.is_first_setup or config.verification is None or not secret:
            return False
        crypto = CryptoService()
        with MasterKey.derive(secret, decode_salt(config.kdf_salt), config.security.kdf) as key:
            return crypto.verify(key, config.verification)

    def lock(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    # --- entries ---

    def add_password(self, request: Union[EntryCreateRequest, Dict[str, Any]]) -> WriteResult:
        session = self._session()
        return session.manager.add(session.key, _coerce(EntryCreateRequest, request))

    def update_password(self, entry_id: Union[str, UUID],
                        request: Union[EntryUpdateRequest, Dict[str, Any]]) -> WriteResult:
        session = self._session()
        return session.manager.update(session.key, parse_entry_id(entry_id), _coerce(EntryUpdateRequest, request))

    def delete_password(self, entry_id: Union[str, UUID]) -> WriteResult:
        return self._session().manager.delete(parse_entry_id(entry_id))

    def search_passwords(self, query: str) -> MergedView:
        return self._session().manager.search(query, StorageTarget.ALL)

    def search_passwords_in_storage(self, query: str, target: Union[str, StorageTarget]) -> MergedView:
        return self._session().manager.search(query, parse_target(target))

    def get_all_passwords_from_storage(self, target: Union[str, StorageTarget]) -> MergedView:
        return self._session().manager.get_all(parse_target(target))

    def get_password_by_id_from_storage(self, entry_id: Union[str, UUID],
                                        target: Union[str, StorageTarget]) -> EntryLookup:
        return self._session().manager.lookup(parse_entry_id(entry_id), parse_target(target))

    # --- storage ---

    def get_storage_status(self) -> Dict[StorageTarget, StorageStatus]:
        return self._session().manager.get_storage_status()

    def sync_storages(self, source: Union[str, StorageTarget], target: Union[str, StorageTarget]) -> SyncReport:
        return self._session().manager.sync_storages(parse_target(source), parse_target(target))

    # --- crypto helpers ---

    def generate_password(self, config: Union[GeneratorConfig, Dict[str, Any], None] = None) -> str:
        if config is None:
            config = GeneratorConfig(length=self.config_manager.config.default_password_length)
        return generate_password(_coerce(GeneratorConfig, config))

    def _derive(self, user_secret: str, encrypted: EncryptedData) -> MasterKey:
        config = self.config_manager.config
        # ciphertexts carry their salt; fall back to the vault salt for older ones
        salt = encrypted.salt or (decode_salt(config.kdf_salt) if config.kdf_salt else b"")
        return MasterKey.derive(user_secret, salt, config.security.kdf)

    def decrypt_password(self, encrypted: Union[EncryptedData, Dict[str, Any]], user_secret: str) -> str:
        encrypted = _coerce(EncryptedData, encrypted)
        with self._derive(user_secret, encrypted) as key:
            return CryptoService().decrypt_text(key, encrypted)

    def decrypt_description(self, encrypted: Union[EncryptedData, Dict[str, Any], str], user_secret: str) -> str:
        if isinstance(encrypted, str):
            return encrypted
        encrypted = _coerce(EncryptedData, encrypted)
        with self._derive(user_secret, encrypted) as key:
            return CryptoService().decrypt_description(key, encrypted)

    # --- config ---

    def get_config(self) -> Dict[str, Any]:
        return self.config_manager.public_view()

    def update_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        self.config_manager.update(patch)
        if self.session is not None and self.session.is_unlocked:
            self.session.reload_config()
        return self.config_manager.public_view()
