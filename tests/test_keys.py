import asyncio
import os

import pytest

from conftest import LIGHT_KDF, make_member
from familyvault.crypto import KEY_SIZE, NONCE_SIZE, TAG_SIZE, zero_bytes
from familyvault.errors import DecryptionFailed, KeyDerivationFailed, SecureEnclaveUnavailable
from familyvault.keys import (
    FileKeyStore,
    FileSecureKeystore,
    InMemoryKeyStore,
    InMemorySecureKeystore,
    KeyManager,
    SecureKeystore,
    generate_vault_key,
)


class BrokenKeystore(SecureKeystore):
    async def private_key(self, identifier):
        raise SecureEnclaveUnavailable()


def test_vault_keys_are_fresh():
    keys = {generate_vault_key() for _ in range(50)}
    assert len(keys) == 50
    assert all(len(k) == KEY_SIZE for k in keys)


@pytest.mark.asyncio
async def test_wrap_unwrap_round_trip(key_manager):
    member = make_member()
    key = generate_vault_key()
    wrapped = await key_manager.wrap(key, member.profile)
    assert len(wrapped) == NONCE_SIZE + KEY_SIZE + TAG_SIZE
    assert key not in wrapped
    assert await key_manager.unwrap_key(member.profile, wrapped) == key
    assert await key_manager.recover_vault_key(member.profile) == key


@pytest.mark.asyncio
async def test_unwrap_by_other_member_fails(key_manager):
    alice, bob = make_member("Alice"), make_member("Bob")
    wrapped = await key_manager.wrap(generate_vault_key(), alice.profile)
    with pytest.raises(DecryptionFailed):
        await key_manager.unwrap_key(bob.profile, wrapped)


@pytest.mark.asyncio
async def test_unwrap_rejects_tampered_and_truncated(key_manager):
    member = make_member()
    wrapped = await key_manager.wrap(generate_vault_key(), member.profile)
    tampered = bytearray(wrapped)
    tampered[-1] ^= 0xFF
    with pytest.raises(DecryptionFailed):
        await key_manager.unwrap_key(member.profile, bytes(tampered))
    with pytest.raises(DecryptionFailed):
        await key_manager.unwrap_key(member.profile, wrapped[:NONCE_SIZE + 4])


@pytest.mark.asyncio
async def test_unwrap_maps_keystore_outage():
    manager = KeyManager(BrokenKeystore(), InMemoryKeyStore())
    with pytest.raises(KeyDerivationFailed):
        await manager.unwrap_key(make_member().profile, b"\x00" * 60)


@pytest.mark.asyncio
async def test_wrapped_key_persistence_miss():
    with pytest.raises(KeyDerivationFailed):
        await InMemoryKeyStore().fetch_wrapped_key("nobody")


@pytest.mark.asyncio
async def test_in_memory_keystore_one_key_per_identifier():
    keystore = InMemorySecureKeystore()
    keys = await asyncio.gather(*(keystore.private_key("member.alice") for _ in range(10)))
    assert len({bytes(k) for k in keys}) == 1
    assert bytes(await keystore.private_key("member.bob")) != bytes(keys[0])


@pytest.mark.asyncio
async def test_file_keystore_is_durable_and_idempotent(tmp_path):
    root = tmp_path / "keystore"
    first = FileSecureKeystore(root, b"correct horse", LIGHT_KDF)
    keys = await asyncio.gather(*(first.private_key("member.alice") for _ in range(5)))
    assert len({bytes(k) for k in keys}) == 1
    assert len(list(root.glob("*.key"))) == 1

    reopened = FileSecureKeystore(root, b"correct horse", LIGHT_KDF)
    assert bytes(await reopened.private_key("member.alice")) == bytes(keys[0])
    if os.name == "posix":
        key_file = next(root.glob("*.key"))
        assert key_file.stat().st_mode & 0o777 == 0o600
        assert "alice" not in key_file.name


@pytest.mark.asyncio
async def test_file_keystore_wrong_passphrase(tmp_path):
    root = tmp_path / "keystore"
    await FileSecureKeystore(root, b"correct horse", LIGHT_KDF).private_key("member.alice")
    with pytest.raises(SecureEnclaveUnavailable):
        await FileSecureKeystore(root, b"battery staple", LIGHT_KDF).private_key("member.alice")


@pytest.mark.asyncio
async def test_file_backed_wrap_survives_restart(tmp_path):
    member = make_member()

    def manager():
        return KeyManager(
            FileSecureKeystore(tmp_path / "keystore", b"pw", LIGHT_KDF),
            FileKeyStore(tmp_path / "wrapped"),
        )

    key = generate_vault_key()
    await manager().wrap(key, member.profile)
    assert await manager().recover_vault_key(member.profile) == key


@pytest.mark.asyncio
async def test_file_key_store_miss(tmp_path):
    with pytest.raises(KeyDerivationFailed):
        await FileKeyStore(tmp_path / "wrapped").fetch_wrapped_key("member.unknown")


def test_zero_bytes_wipes_mutable_buffers():
    secret = bytearray(generate_vault_key())
    zero_bytes(secret)
    assert secret == bytearray(KEY_SIZE)

    backing = bytearray(b"\xff" * 8)
    zero_bytes(memoryview(backing))
    assert backing == bytearray(8)
