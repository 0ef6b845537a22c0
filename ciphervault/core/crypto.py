import base64
import os
from typing import Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel

from .errors import DecryptionError, KeyDerivationError, MalformedCiphertextError
from .models import EncryptedData

KEY_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16

VERIFY_PLAINTEXT = b"VERIFY"
DESCRIPTION_LAYER_INFO = b"ciphervault/description-layer/v1"


class KdfParams(BaseModel):
    """Argon2id cost parameters. ``memory_cost`` is in KiB."""

    memory_cost: int = 65536
    time_cost: int = 3
    parallelism: int = 4


def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def encode_salt(salt: bytes) -> str:
    return base64.b64encode(salt).decode("ascii")


def decode_salt(salt_b64: str) -> bytes:
    return base64.b64decode(salt_b64)


class MasterKey:
    """A derived symmetric key held for the lifetime of one unlocked session."""

    def __init__(self, derived_key: bytes, salt: bytes):
        if len(derived_key) != KEY_SIZE:
            raise KeyDerivationError(f"derived key must be {KEY_SIZE} bytes")
        self._key = bytearray(derived_key)
        self.salt = bytes(salt)
        self._destroyed = False

    @classmethod
    def derive(cls, secret: str, salt: bytes, params: Optional[KdfParams] = None) -> "MasterKey":
        params = params or KdfParams()
        if params.memory_cost <= 0 or params.time_cost <= 0 or params.parallelism <= 0:
            raise KeyDerivationError("Argon2 cost parameters must be positive")
        if not salt:
            raise KeyDerivationError("salt must not be empty")
        try:
            raw = hash_secret_raw(
                secret=secret.encode("utf-8"),
                salt=salt,
                time_cost=params.time_cost,
                memory_cost=params.memory_cost,
                parallelism=params.parallelism,
                hash_len=KEY_SIZE,
                type=Type.ID,
            )
        except HashingError as e:
            raise KeyDerivationError(f"Key derivation failed: {e}") from e
        return cls(raw, salt)

    def derive_subkey(self, info: bytes) -> "MasterKey":
        """Expand an independent key from this one (HKDF-SHA256, salt reused)."""
        hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=self.salt, info=info)
        return MasterKey(hkdf.derive(self.derived_key), self.salt)

    @property
    def derived_key(self) -> bytes:
        if self._destroyed:
            raise KeyDerivationError("master key has been destroyed")
        return bytes(self._key)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._destroyed = True

    def __enter__(self) -> "MasterKey":
        return self

    def __exit__(self, *exc) -> None:
        self.destroy()

    def __repr__(self) -> str:
        return f"MasterKey(destroyed={self._destroyed})"


class CryptoService:
    """AES-256-GCM over a MasterKey, with optional two-layer field encryption.

    The key is passed to every call; the service itself holds no secret.
    The second layer uses a subkey expanded from the primary key with HKDF,
    so it needs no extra salt and no second Argon2 run.
    """

    def __init__(self, double_encryption: bool = False):
        self.double_encryption = double_encryption

    def encrypt(self, key: MasterKey, plaintext: bytes) -> EncryptedData:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key.derived_key).encrypt(nonce, plaintext, None)
        return EncryptedData(ciphertext=ciphertext, nonce=nonce, salt=key.salt)

    def decrypt(self, key: MasterKey, data: EncryptedData) -> bytes:
        self._check_shape(data)
        try:
            return AESGCM(key.derived_key).decrypt(data.nonce, data.ciphertext, None)
        except InvalidTag:
            raise DecryptionError("Invalid master password or corrupted data") from None

    def encrypt_text(self, key: MasterKey, text: str) -> EncryptedData:
        return self.encrypt(key, text.encode("utf-8"))

    def decrypt_text(self, key: MasterKey, data: EncryptedData) -> str:
        plaintext = self.decrypt(key, data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted data is not valid text") from None

    # --- double encryption ---

    def encrypt_double(self, key: MasterKey, plaintext: bytes) -> EncryptedData:
        inner = self.encrypt(key, plaintext)
        with key.derive_subkey(DESCRIPTION_LAYER_INFO) as outer_key:
            return self.encrypt(outer_key, inner.nonce + inner.ciphertext)

    def decrypt_double(self, key: MasterKey, data: EncryptedData) -> bytes:
        with key.derive_subkey(DESCRIPTION_LAYER_INFO) as outer_key:
            payload = self.decrypt(outer_key, data)
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Inner encryption layer is truncated")
        inner = EncryptedData(ciphertext=payload[NONCE_SIZE:], nonce=payload[:NONCE_SIZE], salt=data.salt)
        return self.decrypt(key, inner)

    def encrypt_description(self, key: MasterKey, text: str):
        """Returns the description as stored: plain text, or double-encrypted."""
        if not self.double_encryption:
            return text
        return self.encrypt_double(key, text.encode("utf-8"))

    def decrypt_description(self, key: MasterKey, description) -> str:
        if isinstance(description, str):
            return description
        try:
            return self.decrypt_double(key, description).decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted data is not valid text") from None

    # --- master password verification ---

    def make_verification_token(self, key: MasterKey) -> EncryptedData:
        return self.encrypt(key, VERIFY_PLAINTEXT)

    def verify(self, key: MasterKey, token: EncryptedData) -> bool:
        try:
            return self.decrypt(key, token) == VERIFY_PLAINTEXT
        except DecryptionError:
            return False

    @staticmethod
    def _check_shape(data: EncryptedData) -> None:
        if len(data.nonce) != NONCE_SIZE:
            raise MalformedCiphertextError(f"nonce must be {NONCE_SIZE} bytes, got {len(data.nonce)}")
        if len(data.ciphertext) < TAG_SIZE:
            raise MalformedCiphertextError("ciphertext is shorter than the authentication tag")
