from argon2.low_level import hash_secret_raw, Type
from nacl.bindings import (
    crypto_aead_chacha20poly1305_ietf_encrypt,
    crypto_aead_chacha20poly1305_ietf_decrypt,
    crypto_aead_chacha20poly1305_ietf_KEYBYTES,
    crypto_aead_chacha20poly1305_ietf_NPUBBYTES,
    crypto_aead_chacha20poly1305_ietf_ABYTES,
    crypto_hash_sha256,
    crypto_scalarmult,
)
from nacl.encoding import RawEncoder
from nacl.exceptions import CryptoError
from nacl.hash import blake2b
from nacl.public import PrivateKey
import os, base64

NONCE_SIZE = crypto_aead_chacha20poly1305_ietf_NPUBBYTES   # 12 bytes
TAG_SIZE = crypto_aead_chacha20poly1305_ietf_ABYTES        # 16 bytes
KEY_SIZE = crypto_aead_chacha20poly1305_ietf_KEYBYTES      # 32 bytes

ARGON2_PARAMS = dict(
    time_cost=3,
    memory_cost=256 * 1024,
    parallelism=2,
    hash_len=32,
    type=Type.ID,
)

# blake2b personalisation is exactly 16 bytes
_WRAP_PERSON = b"familyvault-wrap"


def b64e(b: bytes) -> str: return base64.b64encode(b).decode("ascii")
def b64d(s: str) -> bytes: return base64.b64decode(s.encode("ascii"), validate=True)


def kdf_argon2id(password_bytes: bytes, salt: bytes, params: dict | None = None) -> bytes:
    """Derive a 32-byte key from a keystore passphrase using Argon2id."""
    try:
        return hash_secret_raw(password_bytes, salt, **(params or ARGON2_PARAMS))
    finally:
        zero_bytes(password_bytes)


def gen_nonce() -> bytes:
    """Return a cryptographically-random 12-byte nonce for ChaCha20-Poly1305."""
    return os.urandom(NONCE_SIZE)


def gen_key() -> bytes:
    """Return a random 256-bit symmetric key."""
    return os.urandom(KEY_SIZE)


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, ad: bytes | None = None) -> bytes:
    """Encrypt `plaintext`; the 16-byte tag is appended to the returned ciphertext."""
    return crypto_aead_chacha20poly1305_ietf_encrypt(plaintext, ad, nonce, key)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, ad: bytes | None = None) -> bytes:
    """Decrypt a ciphertext produced by `aead_encrypt`, raising ValueError on failure."""
    try:
        return crypto_aead_chacha20poly1305_ietf_decrypt(ciphertext, ad, nonce, key)
    except CryptoError as exc:
        raise ValueError("decryption failed") from exc


def sha256(data: bytes) -> bytes:
    return crypto_hash_sha256(data)


def gen_keypair() -> PrivateKey:
    """Return a fresh X25519 key-agreement private key."""
    return PrivateKey.generate()


def self_agreement_key(private_key: PrivateKey) -> bytes:
    """
    Agree a shared secret between a key pair and its own public half and hash it
    into a 32-byte wrapping key. This is a KDF over the private scalar, not a
    two-party exchange.
    """
    shared = crypto_scalarmult(bytes(private_key), bytes(private_key.public_key))
    return blake2b(shared, digest_size=KEY_SIZE, person=_WRAP_PERSON, encoder=RawEncoder)


def zero_bytes(b: bytes):
    """
    Best-effort zeroization for mutable buffers that held sensitive information.
    Immutable `bytes` cannot be wiped; secrets meant to be wiped must live in a bytearray.
    """
    if isinstance(b, bytearray):
        for i in range(len(b)):
            b[i] = 0
    elif isinstance(b, memoryview) and not b.readonly:
        b[:] = b"\x00" * len(b)
