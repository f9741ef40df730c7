import asyncio
import pathlib
from abc import ABC, abstractmethod
from typing import Dict, List
from uuid import UUID

from pydantic import ValidationError

from .errors import StorageFailure, VaultNotFound
from .fsutil import safe_read_bytes, secure_mkdir, write_secure_file
from .locks import KeyedLock
from .models import Vault


class VaultRepository(ABC):
    """Vault records keyed by vault id; last write wins."""

    @abstractmethod
    async def save_vault(self, vault: Vault) -> None: ...

    @abstractmethod
    async def fetch_vault(self, vault_id: UUID) -> Vault: ...

    @abstractmethod
    async def list_vaults(self) -> List[Vault]: ...

    @abstractmethod
    async def update_vault(self, vault: Vault) -> None: ...


class InMemoryVaultRepository(VaultRepository):
    def __init__(self):
        self._storage: Dict[UUID, Vault] = {}
        self._locks = KeyedLock()

    async def save_vault(self, vault: Vault) -> None:
        async with self._locks(vault.id):
            self._storage[vault.id] = vault.model_copy(deep=True)

    async def fetch_vault(self, vault_id: UUID) -> Vault:
        async with self._locks(vault_id):
            vault = self._storage.get(vault_id)
        if vault is None:
            raise VaultNotFound()
        return vault.model_copy(deep=True)

    async def list_vaults(self) -> List[Vault]:
        return [v.model_copy(deep=True) for v in self._storage.values()]

    async def update_vault(self, vault: Vault) -> None:
        async with self._locks(vault.id):
            if vault.id not in self._storage:
                raise VaultNotFound()
            self._storage[vault.id] = vault.model_copy(deep=True)


class JsonFileVaultRepository(VaultRepository):
    """One owner-only JSON document per vault under `root`."""

    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)
        self._locks = KeyedLock()

    def _path(self, vault_id: UUID) -> pathlib.Path:
        return self.root / f"{vault_id}.json"

    def _write(self, vault: Vault):
        secure_mkdir(self.root, "Vault record directory")
        write_secure_file(self._path(vault.id), vault.model_dump_json(indent=2).encode())

    def _read(self, path: pathlib.Path) -> Vault:
        return Vault.model_validate_json(safe_read_bytes(path))

    def _read_all(self) -> List[Vault]:
        if not self.root.exists():
            return []
        return [self._read(p) for p in sorted(self.root.glob("*.json"))]

    async def save_vault(self, vault: Vault) -> None:
        async with self._locks(vault.id):
            try:
                await asyncio.to_thread(self._write, vault)
            except (OSError, RuntimeError) as exc:
                raise StorageFailure(str(exc)) from exc

    async def fetch_vault(self, vault_id: UUID) -> Vault:
        async with self._locks(vault_id):
            try:
                return await asyncio.to_thread(self._read, self._path(vault_id))
            except FileNotFoundError as exc:
                raise VaultNotFound() from exc
            except (OSError, RuntimeError, ValidationError) as exc:
                raise StorageFailure(str(exc)) from exc

    async def list_vaults(self) -> List[Vault]:
        try:
            return await asyncio.to_thread(self._read_all)
        except (OSError, RuntimeError, ValidationError) as exc:
            raise StorageFailure(str(exc)) from exc

    async def update_vault(self, vault: Vault) -> None:
        async with self._locks(vault.id):
            if not self._path(vault.id).exists():
                raise VaultNotFound()
            try:
                await asyncio.to_thread(self._write, vault)
            except (OSError, RuntimeError) as exc:
                raise StorageFailure(str(exc)) from exc
