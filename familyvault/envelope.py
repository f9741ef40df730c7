"""
Authenticated sealing of arbitrary payloads into portable envelopes.

An envelope carries ciphertext, nonce, tag and a cleartext metadata map.
The metadata is NOT encrypted: only non-sensitive labels belong there.
Whoever holds the envelope and the matching key can recover the plaintext.
"""

import base64, binascii
from typing import Dict

from nacl.exceptions import CryptoError
from pydantic import BaseModel, ConfigDict, ValidationError, field_serializer, field_validator

from .crypto import aead_encrypt, aead_decrypt, gen_nonce, b64e, b64d, NONCE_SIZE, TAG_SIZE, KEY_SIZE
from .errors import EncryptionFailed, DecryptionFailed


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    ciphertext: bytes
    nonce: bytes
    tag: bytes
    metadata: Dict[str, str] = {}

    @field_validator("ciphertext", "nonce", "tag", mode="before")
    @classmethod
    def decode_b64(cls, v):
        """Accept raw bytes, or base64 text as found in the JSON wire form."""
        if isinstance(v, str):
            return b64d(v)
        return v

    @field_serializer("ciphertext", "nonce", "tag")
    def encode_b64(self, v: bytes) -> str:
        return b64e(v)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Envelope":
        try:
            return cls.model_validate_json(data)
        except (ValidationError, ValueError) as exc:
            raise DecryptionFailed("Envelope is malformed.") from exc


def encode_reference(envelope: Envelope) -> str:
    """Base64 text of the serialized envelope, as kept in VaultItem.encrypted_blob_reference."""
    return base64.b64encode(envelope.to_bytes()).decode("ascii")


def decode_reference(reference: str) -> Envelope:
    try:
        raw = base64.b64decode(reference.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionFailed("Blob reference is not valid base64.") from exc
    return Envelope.from_bytes(raw)


class EnvelopeSealer:
    """ChaCha20-Poly1305 (96-bit nonce, 128-bit tag). Stateless; safe to share."""

    def seal(self, plaintext: bytes, metadata: Dict[str, str], key: bytes) -> Envelope:
        if len(key) != KEY_SIZE:
            raise EncryptionFailed(f"Key must be {KEY_SIZE} bytes.")
        nonce = gen_nonce()
        try:
            sealed = aead_encrypt(key, nonce, plaintext)
        except (CryptoError, TypeError) as exc:
            raise EncryptionFailed() from exc
        return Envelope(
            ciphertext=sealed[:-TAG_SIZE],
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            metadata=dict(metadata),
        )

    def open(self, envelope: Envelope, key: bytes) -> bytes:
        if len(envelope.nonce) != NONCE_SIZE:
            raise DecryptionFailed("Nonce has the wrong length.")
        if len(envelope.tag) != TAG_SIZE:
            raise DecryptionFailed("Authentication tag has the wrong length.")
        if len(key) != KEY_SIZE:
            raise DecryptionFailed("Key has the wrong length.")
        try:
            return aead_decrypt(key, envelope.nonce, envelope.ciphertext + envelope.tag)
        except ValueError as exc:
            raise DecryptionFailed() from exc
