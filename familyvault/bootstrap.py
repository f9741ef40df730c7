"""Wire concrete stores and services from Settings."""

from dataclasses import dataclass

from .checklist import VitalChecklistService
from .config import Settings
from .keys import FileKeyStore, FileSecureKeystore, KeyManager
from .legacy import JsonFileLegacyRequestStore, LegacyAccessManager
from .repository import JsonFileVaultRepository, VaultRepository
from .service import VaultService
from .storage import LocalStorageProvider, SQLiteRecordStorageProvider, StorageCoordinator


@dataclass
class Services:
    repository: VaultRepository
    key_manager: KeyManager
    storage: StorageCoordinator
    vaults: VaultService
    legacy: LegacyAccessManager
    checklist: VitalChecklistService


def open_storage(settings: Settings) -> StorageCoordinator:
    remote = SQLiteRecordStorageProvider(settings.remote_db) if settings.remote_db else None
    return StorageCoordinator(LocalStorageProvider(settings.blobs_dir), remote)


def open_services(settings: Settings, passphrase: bytes) -> Services:
    repository = JsonFileVaultRepository(settings.vaults_dir)
    key_manager = KeyManager(
        FileSecureKeystore(settings.keystore_dir, passphrase, settings.argon2.as_params()),
        FileKeyStore(settings.wrapped_keys_dir),
    )
    storage = open_storage(settings)
    checklist = VitalChecklistService()
    return Services(
        repository=repository,
        key_manager=key_manager,
        storage=storage,
        vaults=VaultService(repository, key_manager, storage, checklist=checklist),
        legacy=LegacyAccessManager(repository, JsonFileLegacyRequestStore(settings.legacy_dir)),
        checklist=checklist,
    )
