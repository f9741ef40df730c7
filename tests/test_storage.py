import json
import os
from datetime import timedelta
from uuid import uuid4

import pytest

from familyvault.errors import ItemNotFound, StorageFailure
from familyvault.models import ItemIndex, VaultItem, VaultItemMetadata, utcnow
from familyvault.storage import (
    INDEX_NAME,
    LocalStorageProvider,
    SQLiteRecordStorageProvider,
    StorageCoordinator,
    merge_latest,
)


def _item(vault_id, title="Passport", item_id=None, updated_at=None) -> VaultItem:
    now = utcnow()
    return VaultItem(
        id=item_id or uuid4(),
        vault_id=vault_id,
        encrypted_blob_reference="",
        created_at=now,
        updated_at=updated_at or now,
        metadata=VaultItemMetadata(title_hint=title),
    )


class FlakyRemote(SQLiteRecordStorageProvider):
    """Record store whose writes fail while `down` is set."""

    down = True

    async def save_item(self, item, data):
        if self.down:
            raise StorageFailure("remote unreachable")
        await super().save_item(item, data)


@pytest.fixture
def local(tmp_path):
    return LocalStorageProvider(tmp_path / "blobs")


@pytest.fixture
def remote(tmp_path):
    return SQLiteRecordStorageProvider(tmp_path / "remote.db")


@pytest.mark.asyncio
async def test_local_save_fetch_and_index(local):
    vault_id = uuid4()
    item = _item(vault_id)
    await local.save_item(item, b"sealed bytes")
    assert await local.fetch_item(item.id, vault_id) == b"sealed bytes"
    assert [i.id for i in await local.list_items(vault_id)] == [item.id]

    index = ItemIndex.model_validate_json((local.vault_dir(vault_id) / INDEX_NAME).read_bytes())
    assert index.items[0].metadata.title_hint == "Passport"
    if os.name == "posix":
        assert local.blob_path(item.id, vault_id).stat().st_mode & 0o777 == 0o600
        assert local.vault_dir(vault_id).stat().st_mode & 0o777 == 0o700


@pytest.mark.asyncio
async def test_local_resave_replaces_index_entry(local):
    vault_id = uuid4()
    item = _item(vault_id, "Draft")
    await local.save_item(item, b"v1")
    await local.save_item(item.model_copy(update={"metadata": VaultItemMetadata(title_hint="Final")}), b"v2")
    listed = await local.list_items(vault_id)
    assert [i.metadata.title_hint for i in listed] == ["Final"]
    assert await local.fetch_item(item.id, vault_id) == b"v2"


@pytest.mark.asyncio
async def test_local_delete_rewrites_index(local):
    vault_id = uuid4()
    keep, drop = _item(vault_id, "Keep"), _item(vault_id, "Drop")
    await local.save_item(keep, b"keep")
    await local.save_item(drop, b"drop")

    await local.delete_item(drop.id, vault_id)

    raw = json.loads((local.vault_dir(vault_id) / INDEX_NAME).read_text())
    assert [entry["id"] for entry in raw["items"]] == [str(keep.id)]
    assert not local.blob_path(drop.id, vault_id).exists()
    with pytest.raises(ItemNotFound):
        await local.fetch_item(drop.id, vault_id)
    with pytest.raises(ItemNotFound):
        await local.delete_item(drop.id, vault_id)


@pytest.mark.asyncio
async def test_local_refuses_symlinked_blob(local, tmp_path):
    vault_id = uuid4()
    item = _item(vault_id)
    await local.save_item(item, b"real")
    target = tmp_path / "elsewhere"
    target.write_bytes(b"planted")
    blob = local.blob_path(item.id, vault_id)
    blob.unlink()
    blob.symlink_to(target)
    with pytest.raises(StorageFailure):
        await local.fetch_item(item.id, vault_id)


@pytest.mark.asyncio
async def test_sqlite_records(remote):
    vault_id, other_vault = uuid4(), uuid4()
    first, second = _item(vault_id, "One"), _item(vault_id, "Two")
    await remote.save_item(first, b"one")
    await remote.save_item(second, b"two")
    await remote.save_item(_item(other_vault, "Elsewhere"), b"x")

    assert await remote.fetch_item(first.id, vault_id) == b"one"
    assert [i.id for i in await remote.list_items(vault_id)] == [first.id, second.id]
    with pytest.raises(ItemNotFound):
        await remote.fetch_item(first.id, other_vault)

    await remote.delete_item(first.id, vault_id)
    with pytest.raises(ItemNotFound):
        await remote.delete_item(first.id, vault_id)
    await remote.synchronize()
    assert [i.id for i in await remote.list_items(vault_id)] == [second.id]


@pytest.mark.asyncio
async def test_fetch_falls_back_to_remote_and_repairs_local(local, remote):
    vault_id = uuid4()
    item = _item(vault_id, "Passport")
    await remote.save_item(item, b"remote copy")
    coordinator = StorageCoordinator(local, remote)

    assert await coordinator.fetch_item(item.id, vault_id) == b"remote copy"

    assert await local.fetch_item(item.id, vault_id) == b"remote copy"
    assert [i.metadata.title_hint for i in await local.list_items(vault_id)] == ["Passport"]


@pytest.mark.asyncio
async def test_fetch_without_remote_reports_missing(local):
    with pytest.raises(ItemNotFound):
        await StorageCoordinator(local).fetch_item(uuid4(), uuid4())


@pytest.mark.asyncio
async def test_listing_keeps_latest_update(local, remote):
    vault_id, item_id = uuid4(), uuid4()
    older = _item(vault_id, "Old title", item_id)
    newer = older.model_copy(update={
        "metadata": VaultItemMetadata(title_hint="New title"),
        "updated_at": older.updated_at + timedelta(minutes=5),
    })
    await local.save_item(newer, b"new")
    await remote.save_item(older, b"old")

    listed = await StorageCoordinator(local, remote).list_items(vault_id)
    assert len(listed) == 1
    assert listed[0].metadata.title_hint == "New title"


def test_merge_latest_orders_by_creation():
    vault_id = uuid4()
    a = _item(vault_id, "A")
    b = _item(vault_id, "B")
    b = b.model_copy(update={"created_at": a.created_at + timedelta(seconds=1)})
    stale_b = b.model_copy(update={"updated_at": b.updated_at - timedelta(days=1), "metadata": VaultItemMetadata(title_hint="stale")})
    merged = merge_latest([b], [stale_b, a])
    assert [i.metadata.title_hint for i in merged] == ["A", "B"]


@pytest.mark.asyncio
async def test_remote_failure_is_queued_and_replayed(local, tmp_path):
    vault_id = uuid4()
    remote = FlakyRemote(tmp_path / "remote.db")
    coordinator = StorageCoordinator(local, remote)
    item = _item(vault_id)

    await coordinator.save_item(item, b"sealed")
    assert await local.fetch_item(item.id, vault_id) == b"sealed"
    assert [i.id for i in coordinator.pending_remote_writes] == [item.id]
    assert await remote.list_items(vault_id) == []

    remote.down = False
    await coordinator.synchronize()
    assert coordinator.pending_remote_writes == []
    assert await remote.fetch_item(item.id, vault_id) == b"sealed"


@pytest.mark.asyncio
async def test_local_write_failure_propagates(tmp_path, remote):
    blocker = tmp_path / "blobs"
    blocker.write_bytes(b"not a directory")
    coordinator = StorageCoordinator(LocalStorageProvider(blocker), remote)
    item = _item(uuid4())
    with pytest.raises(StorageFailure):
        await coordinator.save_item(item, b"sealed")
    assert await remote.list_items(item.vault_id) == []


@pytest.mark.asyncio
async def test_delete_spans_replicas(local, remote):
    vault_id = uuid4()
    coordinator = StorageCoordinator(local, remote)
    item = _item(vault_id)
    await coordinator.save_item(item, b"sealed")

    await coordinator.delete_item(item.id, vault_id)
    assert await coordinator.list_items(vault_id) == []
    with pytest.raises(ItemNotFound):
        await coordinator.delete_item(item.id, vault_id)
