import logging
from typing import Optional

import requests

from ciphervault.core.crypto import CryptoService, MasterKey, decode_salt, encode_salt, generate_salt
from ciphervault.core.errors import DecryptionError, ValidationError, VaultLockedError
from ciphervault.storage.factory import build_storages

from .config import ConfigManager
from .manager import PasswordManager

logger = logging.getLogger(__name__)


def build_manager(config_manager: ConfigManager, crypto: CryptoService,
                  http_session: Optional[requests.Session] = None) -> PasswordManager:
    storage_config = config_manager.config.storage
    storages = build_storages(storage_config, config_manager.local_data_path(), http_session)
    disabled = [t for t in storages if not storage_config.is_enabled(t)]
    return PasswordManager(storages, crypto, priority=storage_config.priority, disabled=disabled)


class VaultSession:
    """Everything that exists only while the vault is unlocked.

    Created by ``open`` from the master password and torn down by ``close``,
    which zeroes the key. Nothing here is process-global, so independent
    sessions can coexist.
    """

    def __init__(self, config_manager: ConfigManager, key: MasterKey, crypto: CryptoService,
                 manager: PasswordManager, http_session: Optional[requests.Session] = None):
        self.config_manager = config_manager
        self._key = key
        self.crypto = crypto
        self.manager = manager
        self._http_session = http_session
        self.created_new_vault = False

    @classmethod
    def open(cls, config_manager: ConfigManager, master_password: str,
             http_session: Optional[requests.Session] = None) -> "VaultSession":
        if not master_password:
            raise ValidationError("Master password must not be empty")

        config = config_manager.config
        crypto = CryptoService(double_encryption=config.security.double_encryption)
        first_setup = config.is_first_setup

        if first_setup:
            salt = generate_salt()
            key = MasterKey.derive(master_password, salt, config.security.kdf)
            config_manager.complete_setup(encode_salt(salt), crypto.make_verification_token(key))
            logger.info("Vault initialized at %s", config_manager.config_path)
        else:
            key = MasterKey.derive(master_password, decode_salt(config.kdf_salt), config.security.kdf)
            if config.verification is not None and not crypto.verify(key, config.verification):
                key.destroy()
                raise DecryptionError("Invalid master password")

        session = cls(config_manager, key, crypto, build_manager(config_manager, crypto, http_session),
                      http_session)
        session.created_new_vault = first_setup
        logger.info("Vault unlocked")
        return session

    @property
    def is_unlocked(self) -> bool:
        return not self._key.destroyed

    @property
    def key(self) -> MasterKey:
        if self._key.destroyed:
            raise VaultLockedError("Vault is locked")
        return self._key

    def reload_config(self) -> None:
        """Pick up configuration changes (backends, double encryption)."""
        self.crypto.double_encryption = self.config_manager.config.security.double_encryption
        self.manager = build_manager(self.config_manager, self.crypto, self._http_session)

    def close(self) -> None:
        self._key.destroy()
        logger.info("Vault locked")

    def __enter__(self) -> "VaultSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
