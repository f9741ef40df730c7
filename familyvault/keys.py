"""
Vault-key generation and per-member key wrapping.

Wrapping construction: the member's X25519 key pair agrees a secret with its
own public half; BLAKE2b over that secret gives the wrapping key. This is a
KDF over the member's private scalar (there is no second party), kept for
compatibility with existing wrapped keys. The vault key is then sealed with
ChaCha20-Poly1305 using the key identifier as associated data:

    wrapped = nonce(12) || ciphertext(32) || tag(16)
"""

import asyncio
import os
import pathlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict

from nacl.exceptions import CryptoError
from nacl.public import PrivateKey
from pydantic import BaseModel, ValidationError

from .crypto import (
    aead_decrypt,
    aead_encrypt,
    b64d,
    b64e,
    gen_key,
    gen_keypair,
    gen_nonce,
    kdf_argon2id,
    self_agreement_key,
    sha256,
    NONCE_SIZE,
    TAG_SIZE,
    KEY_SIZE,
)
from .errors import DecryptionFailed, KeyDerivationFailed, SecureEnclaveUnavailable
from .fsutil import create_secure_file, safe_read_bytes, secure_mkdir, write_secure_file
from .locks import KeyedLock
from .logging import get_logger
from .models import UserProfile, utcnow

LOG = get_logger("security")

PRIVATE_KEY_CONTEXT = b"familyvault-private-key"


def _file_stem(identifier: str) -> str:
    # identifiers are arbitrary text; never use them as path components
    return sha256(identifier.encode("utf-8")).hex()


def generate_vault_key() -> bytes:
    """Fresh uniformly random 256-bit vault key."""
    return gen_key()


class SecureKeystore(ABC):
    """Source of per-member key-agreement private keys."""

    @abstractmethod
    async def private_key(self, identifier: str) -> PrivateKey:
        """Return the key for `identifier`, generating and persisting it on first use."""


class InMemorySecureKeystore(SecureKeystore):
    def __init__(self):
        self._keys: Dict[str, PrivateKey] = {}
        self._locks = KeyedLock()

    async def private_key(self, identifier: str) -> PrivateKey:
        async with self._locks(identifier):
            key = self._keys.get(identifier)
            if key is None:
                key = gen_keypair()
                self._keys[identifier] = key
            return key


class SealedPrivateKey(BaseModel):
    """On-disk form of a keystore entry."""
    version: int = 1
    kdf_salt_b64: str
    nonce_b64: str
    sealed_key_b64: str
    created: datetime


class FileSecureKeystore(SecureKeystore):
    """
    Durable keystore: one owner-only file per identifier, the private key sealed
    under an Argon2id key derived from the keystore passphrase.

    Creation links the new file into place, so two creators racing for the same
    identifier (even across processes) end up with a single key.
    """

    def __init__(self, root: pathlib.Path, passphrase: bytes, kdf_params: dict | None = None):
        self.root = pathlib.Path(root)
        self._passphrase = bytes(passphrase)
        self._kdf_params = kdf_params
        self._locks = KeyedLock()

    def _path(self, identifier: str) -> pathlib.Path:
        return self.root / f"{_file_stem(identifier)}.key"

    def _derive(self, salt: bytes) -> bytes:
        return kdf_argon2id(self._passphrase, salt, self._kdf_params)

    def _seal(self, key: PrivateKey) -> bytes:
        salt = os.urandom(16)
        nonce = gen_nonce()
        kek = self._derive(salt)
        sealed = aead_encrypt(kek, nonce, bytes(key), PRIVATE_KEY_CONTEXT)
        record = SealedPrivateKey(
            kdf_salt_b64=b64e(salt),
            nonce_b64=b64e(nonce),
            sealed_key_b64=b64e(sealed),
            created=utcnow(),
        )
        return record.model_dump_json(indent=2).encode()

    def _unseal(self, raw: bytes) -> PrivateKey:
        record = SealedPrivateKey.model_validate_json(raw)
        kek = self._derive(b64d(record.kdf_salt_b64))
        secret = aead_decrypt(kek, b64d(record.nonce_b64), b64d(record.sealed_key_b64), PRIVATE_KEY_CONTEXT)
        return PrivateKey(secret)

    def _load_or_create(self, identifier: str) -> PrivateKey:
        secure_mkdir(self.root, "Keystore directory")
        path = self._path(identifier)
        if not path.exists():
            key = gen_keypair()
            if create_secure_file(path, self._seal(key)):
                return key
        return self._unseal(safe_read_bytes(path))

    async def private_key(self, identifier: str) -> PrivateKey:
        async with self._locks(identifier):
            try:
                return await asyncio.to_thread(self._load_or_create, identifier)
            except (OSError, RuntimeError, ValueError, ValidationError, CryptoError) as exc:
                LOG.error("keystore_unavailable", identifier=identifier, error=str(exc))
                raise SecureEnclaveUnavailable() from exc


class KeyPersistence(ABC):
    """Opaque wrapped-key blobs keyed by key-reference identifier."""

    @abstractmethod
    async def store_wrapped_key(self, data: bytes, identifier: str) -> None: ...

    @abstractmethod
    async def fetch_wrapped_key(self, identifier: str) -> bytes: ...


class InMemoryKeyStore(KeyPersistence):
    def __init__(self):
        self._storage: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def store_wrapped_key(self, data: bytes, identifier: str) -> None:
        async with self._lock:
            self._storage[identifier] = bytes(data)

    async def fetch_wrapped_key(self, identifier: str) -> bytes:
        async with self._lock:
            data = self._storage.get(identifier)
        if data is None:
            raise KeyDerivationFailed(f"No wrapped key stored for {identifier}.")
        return data


class FileKeyStore(KeyPersistence):
    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)
        self._locks = KeyedLock()

    def _path(self, identifier: str) -> pathlib.Path:
        return self.root / f"{_file_stem(identifier)}.wrapped"

    def _write(self, data: bytes, identifier: str):
        secure_mkdir(self.root, "Wrapped-key directory")
        write_secure_file(self._path(identifier), data)

    async def store_wrapped_key(self, data: bytes, identifier: str) -> None:
        async with self._locks(identifier):
            await asyncio.to_thread(self._write, data, identifier)

    async def fetch_wrapped_key(self, identifier: str) -> bytes:
        path = self._path(identifier)
        async with self._locks(identifier):
            try:
                return await asyncio.to_thread(safe_read_bytes, path)
            except FileNotFoundError as exc:
                raise KeyDerivationFailed(f"No wrapped key stored for {identifier}.") from exc
            except (OSError, RuntimeError) as exc:
                raise KeyDerivationFailed(f"Wrapped key for {identifier} is unreadable.") from exc


class KeyManager:
    """Wraps vault keys for members using their keystore key pair."""

    def __init__(self, keystore: SecureKeystore, persistence: KeyPersistence):
        self.keystore = keystore
        self.persistence = persistence

    def generate_vault_key(self) -> bytes:
        return generate_vault_key()

    async def _wrapping_key(self, member: UserProfile) -> bytes:
        private_key = await self.keystore.private_key(member.key_reference.identifier)
        return self_agreement_key(private_key)

    async def wrap(self, key: bytes, member: UserProfile) -> bytes:
        identifier = member.key_reference.identifier
        wrapping_key = await self._wrapping_key(member)
        nonce = gen_nonce()
        wrapped = nonce + aead_encrypt(wrapping_key, nonce, key, identifier.encode("utf-8"))
        await self.persistence.store_wrapped_key(wrapped, identifier)
        LOG.info("vault_key_wrapped", member=str(member.id))
        return wrapped

    async def unwrap_key(self, member: UserProfile, wrapped: bytes) -> bytes:
        identifier = member.key_reference.identifier
        try:
            wrapping_key = await self._wrapping_key(member)
        except SecureEnclaveUnavailable as exc:
            raise KeyDerivationFailed() from exc
        if len(wrapped) < NONCE_SIZE + KEY_SIZE + TAG_SIZE:
            raise DecryptionFailed("Wrapped key is truncated.")
        try:
            return aead_decrypt(wrapping_key, wrapped[:NONCE_SIZE], wrapped[NONCE_SIZE:], identifier.encode("utf-8"))
        except ValueError as exc:
            raise DecryptionFailed("Wrapped key did not open.") from exc

    async def recover_vault_key(self, member: UserProfile) -> bytes:
        """Fetch the wrap persisted for `member` and open it."""
        wrapped = await self.persistence.fetch_wrapped_key(member.key_reference.identifier)
        return await self.unwrap_key(member, wrapped)
