"""
Blob storage for sealed vault items.

`LocalStorageProvider` keeps one blob file per item plus a JSON metadata index
per vault. `SQLiteRecordStorageProvider` stands in for a cloud record store:
one record per item, queryable by vault id. `StorageCoordinator` composes one
local store with an optional remote one:

- writes go local first, then remote; no atomicity between the two
- reads try local, fall back to remote and repair the local copy
- listings merge both sides, newest `updated_at` per item wins
"""

import asyncio
import pathlib
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError

from .crypto import b64e
from .errors import ItemNotFound, RecoverableStorageError, StorageFailure
from .fsutil import ensure_not_symlink, safe_read_bytes, secure_mkdir, write_secure_file
from .locks import KeyedLock
from .logging import get_logger
from .models import ItemIndex, VaultItem, VaultItemMetadata

LOG = get_logger("storage")

INDEX_NAME = "metadata.json"
BLOB_SUFFIX = ".fv"


class StorageProvider(ABC):

    @abstractmethod
    async def save_item(self, item: VaultItem, data: bytes) -> None: ...

    @abstractmethod
    async def fetch_item(self, item_id: UUID, vault_id: UUID) -> bytes:
        """Return the stored envelope bytes; raises ItemNotFound."""

    @abstractmethod
    async def list_items(self, vault_id: UUID) -> List[VaultItem]: ...

    @abstractmethod
    async def delete_item(self, item_id: UUID, vault_id: UUID) -> None: ...

    @abstractmethod
    async def synchronize(self) -> None: ...


class LocalStorageProvider(StorageProvider):
    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)
        self._locks = KeyedLock()

    def vault_dir(self, vault_id: UUID) -> pathlib.Path:
        return self.root / str(vault_id)

    def blob_path(self, item_id: UUID, vault_id: UUID) -> pathlib.Path:
        return self.vault_dir(vault_id) / f"{item_id}{BLOB_SUFFIX}"

    def _load_index(self, vault_id: UUID) -> ItemIndex:
        path = self.vault_dir(vault_id) / INDEX_NAME
        if not path.exists():
            return ItemIndex()
        return ItemIndex.model_validate_json(safe_read_bytes(path))

    def _store_index(self, vault_id: UUID, idx: ItemIndex):
        write_secure_file(self.vault_dir(vault_id) / INDEX_NAME, idx.model_dump_json(indent=2).encode())

    def _save(self, item: VaultItem, data: bytes):
        secure_mkdir(self.root, "Storage root")
        secure_mkdir(self.vault_dir(item.vault_id), "Vault storage directory")
        write_secure_file(self.blob_path(item.id, item.vault_id), data)
        idx = self._load_index(item.vault_id)
        for pos, existing in enumerate(idx.items):
            if existing.id == item.id:
                idx.items[pos] = item
                break
        else:
            idx.items.append(item)
        self._store_index(item.vault_id, idx)

    def _fetch(self, item_id: UUID, vault_id: UUID) -> bytes:
        path = self.blob_path(item_id, vault_id)
        ensure_not_symlink(path, "Blob file")
        return safe_read_bytes(path)

    def _delete(self, item_id: UUID, vault_id: UUID):
        idx = self._load_index(vault_id)
        keep = [i for i in idx.items if i.id != item_id]
        blob = self.blob_path(item_id, vault_id)
        if len(keep) == len(idx.items) and not blob.exists():
            raise FileNotFoundError(str(blob))
        if len(keep) != len(idx.items):
            idx.items = keep
            self._store_index(vault_id, idx)
        blob.unlink(missing_ok=True)

    async def save_item(self, item: VaultItem, data: bytes) -> None:
        async with self._locks(item.vault_id):
            try:
                await asyncio.to_thread(self._save, item, data)
            except (OSError, RuntimeError, ValidationError) as exc:
                raise StorageFailure(str(exc)) from exc

    async def fetch_item(self, item_id: UUID, vault_id: UUID) -> bytes:
        async with self._locks(vault_id):
            try:
                return await asyncio.to_thread(self._fetch, item_id, vault_id)
            except FileNotFoundError as exc:
                raise ItemNotFound() from exc
            except (OSError, RuntimeError) as exc:
                raise StorageFailure(str(exc)) from exc

    async def list_items(self, vault_id: UUID) -> List[VaultItem]:
        async with self._locks(vault_id):
            try:
                idx = await asyncio.to_thread(self._load_index, vault_id)
            except (OSError, RuntimeError, ValidationError) as exc:
                raise StorageFailure(str(exc)) from exc
        return idx.items

    async def delete_item(self, item_id: UUID, vault_id: UUID) -> None:
        async with self._locks(vault_id):
            try:
                await asyncio.to_thread(self._delete, item_id, vault_id)
            except FileNotFoundError as exc:
                raise ItemNotFound() from exc
            except (OSError, RuntimeError, ValidationError) as exc:
                raise StorageFailure(str(exc)) from exc

    async def synchronize(self) -> None:
        """Nothing to reconcile for a single local directory."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS vault_items (
    record_name TEXT PRIMARY KEY,
    vault_id    TEXT NOT NULL,
    item_json   TEXT NOT NULL,
    payload     BLOB NOT NULL,
    updated_at  TEXT NOT NULL
)
"""
_VAULT_INDEX = "CREATE INDEX IF NOT EXISTS idx_vault_items_vault ON vault_items(vault_id)"

# busy timeouts surface as this OperationalError message
_LOCKED_MESSAGES = ("database is locked", "database table is locked")


class SQLiteRecordStorageProvider(StorageProvider):
    """
    Record-store replica backed by SQLite: one record per item, keyed by item id,
    with the vault id as a queryable field.
    """

    def __init__(self, db_path: pathlib.Path, timeout: float = 5.0, retry_after: float = 1.0):
        self.db_path = pathlib.Path(db_path)
        self.timeout = timeout
        self.retry_after = retry_after
        self._lock = asyncio.Lock()
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        if not self._ready:
            conn.execute(_SCHEMA)
            conn.execute(_VAULT_INDEX)
            conn.commit()
            self._ready = True
        return conn

    def _run(self, sql: str, params: Tuple = ()) -> Tuple[List[tuple], int]:
        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(sql, params)
                return cursor.fetchall(), cursor.rowcount

    async def _execute(self, sql: str, params: Tuple = ()) -> Tuple[List[tuple], int]:
        try:
            return await asyncio.to_thread(self._run, sql, params)
        except sqlite3.OperationalError as exc:
            if any(m in str(exc) for m in _LOCKED_MESSAGES):
                raise RecoverableStorageError(str(exc), retry_after=self.retry_after) from exc
            raise StorageFailure(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageFailure(str(exc)) from exc

    async def _query(self, sql: str, params: Tuple = ()) -> List[tuple]:
        rows, _ = await self._execute(sql, params)
        return rows

    async def save_item(self, item: VaultItem, data: bytes) -> None:
        async with self._lock:
            await self._query(
                "INSERT OR REPLACE INTO vault_items (record_name, vault_id, item_json, payload, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (str(item.id), str(item.vault_id), item.model_dump_json(), sqlite3.Binary(data), item.updated_at.isoformat()),
            )

    async def fetch_item(self, item_id: UUID, vault_id: UUID) -> bytes:
        rows = await self._query(
            "SELECT payload FROM vault_items WHERE record_name = ? AND vault_id = ?",
            (str(item_id), str(vault_id)),
        )
        if not rows:
            raise ItemNotFound()
        if rows[0][0] is None:
            raise StorageFailure("Missing payload")
        return bytes(rows[0][0])

    async def list_items(self, vault_id: UUID) -> List[VaultItem]:
        rows = await self._query(
            "SELECT record_name, item_json FROM vault_items WHERE vault_id = ? ORDER BY rowid",
            (str(vault_id),),
        )
        items = []
        for record_name, item_json in rows:
            try:
                items.append(VaultItem.model_validate_json(item_json))
            except ValidationError:
                LOG.warning("remote_record_unreadable", record=record_name, vault_id=str(vault_id))
        return items

    async def delete_item(self, item_id: UUID, vault_id: UUID) -> None:
        async with self._lock:
            _, deleted = await self._execute(
                "DELETE FROM vault_items WHERE record_name = ? AND vault_id = ?",
                (str(item_id), str(vault_id)),
            )
        if deleted < 1:
            raise ItemNotFound()

    async def synchronize(self) -> None:
        """Checkpoint the write-ahead log so the database file is self-contained."""
        await self._query("PRAGMA wal_checkpoint(TRUNCATE)")


def merge_latest(*listings: List[VaultItem]) -> List[VaultItem]:
    """One entry per item id, the one with the latest `updated_at`; ordered by creation."""
    newest: Dict[UUID, VaultItem] = {}
    for listing in listings:
        for item in listing:
            current = newest.get(item.id)
            if current is None or item.updated_at > current.updated_at:
                newest[item.id] = item
    return sorted(newest.values(), key=lambda i: (i.created_at, str(i.id)))


class StorageCoordinator:
    """Dual-write, read-repair composition of a local store and an optional remote."""

    def __init__(self, local: StorageProvider, remote: Optional[StorageProvider] = None):
        self.local = local
        self.remote = remote
        self._pending: Dict[UUID, VaultItem] = {}
        self._lock = asyncio.Lock()

    @property
    def pending_remote_writes(self) -> List[VaultItem]:
        return list(self._pending.values())

    async def save_item(self, item: VaultItem, data: bytes) -> None:
        async with self._lock:
            await self.local.save_item(item, data)
            if self.remote is None:
                return
            try:
                await self.remote.save_item(item, data)
            except StorageFailure as exc:
                # local copy is authoritative; synchronize() replays the remote write
                self._pending[item.id] = item
                LOG.error("remote_write_failed", item_id=str(item.id), vault_id=str(item.vault_id), error=exc.detail)
            else:
                self._pending.pop(item.id, None)

    async def fetch_item(self, item_id: UUID, vault_id: UUID) -> bytes:
        try:
            return await self.local.fetch_item(item_id, vault_id)
        except (ItemNotFound, StorageFailure) as exc:
            if self.remote is None:
                raise
            LOG.info("local_miss_fallback_remote", item_id=str(item_id), vault_id=str(vault_id), reason=type(exc).__name__)
        blob = await self.remote.fetch_item(item_id, vault_id)
        await self._repair_local(item_id, vault_id, blob)
        return blob

    async def _repair_local(self, item_id: UUID, vault_id: UUID, blob: bytes):
        record = None
        for candidate in await self.remote.list_items(vault_id):
            if candidate.id == item_id:
                record = candidate
                break
        if record is None:
            record = VaultItem(
                id=item_id,
                vault_id=vault_id,
                encrypted_blob_reference=b64e(blob),
                metadata=VaultItemMetadata(title_hint="Restored"),
            )
        async with self._lock:
            await self.local.save_item(record, blob)
        LOG.info("local_repaired", item_id=str(item_id), vault_id=str(vault_id))

    async def list_items(self, vault_id: UUID) -> List[VaultItem]:
        local_items = await self.local.list_items(vault_id)
        if self.remote is None:
            return merge_latest(local_items)
        remote_items = await self.remote.list_items(vault_id)
        return merge_latest(local_items, remote_items)

    async def delete_item(self, item_id: UUID, vault_id: UUID) -> None:
        """Delete from every replica; ItemNotFound only when no replica had it."""
        async with self._lock:
            self._pending.pop(item_id, None)
            found = False
            for provider in (self.local, self.remote):
                if provider is None:
                    continue
                try:
                    await provider.delete_item(item_id, vault_id)
                    found = True
                except ItemNotFound:
                    continue
            if not found:
                raise ItemNotFound()

    async def synchronize(self) -> None:
        async with self._lock:
            if self.remote is not None:
                for item in list(self._pending.values()):
                    data = await self.local.fetch_item(item.id, item.vault_id)
                    await self.remote.save_item(item, data)
                    del self._pending[item.id]
                    LOG.info("remote_write_replayed", item_id=str(item.id), vault_id=str(item.vault_id))
        await self.local.synchronize()
        if self.remote is not None:
            await self.remote.synchronize()
