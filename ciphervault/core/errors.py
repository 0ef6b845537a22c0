from typing import Optional


class VaultError(Exception):
    """Base class for every error surfaced by ciphervault.

    Each subclass carries a stable ``code`` so callers (the HTTP layer, a UI)
    can branch on it without parsing messages.
    """

    code = "vault_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(VaultError):
    code = "validation_error"


class VaultLockedError(VaultError):
    code = "vault_locked"


class NotFoundError(VaultError):
    code = "not_found"


# --- crypto ---

class CryptoError(VaultError):
    code = "crypto_error"


class KeyDerivationError(CryptoError):
    code = "key_derivation_failed"


class DecryptionError(CryptoError):
    code = "decryption_failed"


class MalformedCiphertextError(CryptoError):
    code = "malformed_ciphertext"


# --- storage ---

class StorageError(VaultError):
    code = "storage_error"

    def __init__(self, message: str = "", target: Optional[object] = None):
        super().__init__(message)
        self.target = target
        # partial outcome of a multi-backend write or a sync, when there is one
        self.result = None
        self.report = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.target is not None:
            data["target"] = str(self.target)
        if self.result is not None:
            data["result"] = self.result.model_dump(mode="json")
        if self.report is not None:
            data["report"] = self.report.model_dump(mode="json")
        return data


class StorageUnavailableError(StorageError):
    code = "storage_unavailable"


class UnsupportedVersionError(StorageUnavailableError):
    code = "unsupported_version"


class ConflictError(StorageError):
    code = "conflict"
