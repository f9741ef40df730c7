import os

import pytest

from conftest import make_policy
from familyvault.doctor import Severity, StoreDoctor
from familyvault.models import VaultItemMetadata
from familyvault.storage import BLOB_SUFFIX

posix_only = pytest.mark.skipif(os.name != "posix", reason="permission bits are POSIX-only")


def _ids(results):
    return {r.id for r in results}


async def _populated(service, owner, count=2):
    vault = await service.create_vault("Family", owner, make_policy())
    items = [
        await service.upload(f"doc {n}".encode(), VaultItemMetadata(title_hint=f"Doc {n}"), vault.id, owner)
        for n in range(count)
    ]
    return vault, items


def test_missing_store(tmp_path):
    results = StoreDoctor(tmp_path / "nothing").run()
    assert [r.id for r in results] == ["store_missing"]


@pytest.mark.asyncio
async def test_healthy_store(service, storage, owner):
    await _populated(service, owner)
    results = StoreDoctor(storage.local.root).run()
    assert all(r.severity == Severity.OK for r in results)
    assert "summary_all_good" in _ids(results)


@pytest.mark.asyncio
async def test_missing_and_orphaned_blobs(service, storage, owner):
    vault, items = await _populated(service, owner)
    storage.local.blob_path(items[0].id, vault.id).unlink()
    orphan = storage.local.vault_dir(vault.id) / f"stray{BLOB_SUFFIX}"
    orphan.write_bytes(storage.local.blob_path(items[1].id, vault.id).read_bytes())
    os.chmod(orphan, 0o600)

    results = StoreDoctor(storage.local.root).run()
    found = _ids(results)
    assert {"blob_missing", "blob_orphaned", "nonce_reuse"} <= found


@pytest.mark.asyncio
async def test_malformed_envelope(service, storage, owner):
    vault, items = await _populated(service, owner, count=1)
    storage.local.blob_path(items[0].id, vault.id).write_bytes(b"garbage")
    assert "envelope_malformed" in _ids(StoreDoctor(storage.local.root).run())


@posix_only
@pytest.mark.asyncio
async def test_loose_permissions(service, storage, owner):
    vault, items = await _populated(service, owner, count=1)
    os.chmod(storage.local.blob_path(items[0].id, vault.id), 0o644)
    results = StoreDoctor(storage.local.root).run()
    mismatches = [r for r in results if r.id == "permission_mismatch"]
    assert len(mismatches) == 1
    assert mismatches[0].to_dict()["details"] == {"expected": "0o600", "actual": "0o644"}


def test_symlinked_root(tmp_path):
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real)
    assert _ids(StoreDoctor(link).run()) == {"store_is_symlink"}


@pytest.mark.asyncio
async def test_symlinked_index(service, storage, owner, tmp_path):
    vault, _ = await _populated(service, owner, count=1)
    index = storage.local.vault_dir(vault.id) / "metadata.json"
    decoy = tmp_path / "decoy.json"
    decoy.write_bytes(index.read_bytes())
    index.unlink()
    index.symlink_to(decoy)

    found = _ids(StoreDoctor(storage.local.root).run())
    assert "index_symlink" in found
    assert "index_missing" not in found
