"""
Shared fixtures for familyvault tests.

Provides:
- Light Argon2 parameters so keystore tests stay fast
- Member and policy factories
- In-memory service wiring
"""

import pytest
import structlog
from argon2.low_level import Type

from familyvault.keys import InMemoryKeyStore, InMemorySecureKeystore, KeyManager
from familyvault.legacy import LegacyAccessManager
from familyvault.models import (
    AccessPolicy,
    LegacyRule,
    Member,
    SecureKeyReference,
    SharingRule,
    UserProfile,
    VaultRole,
)
from familyvault.repository import InMemoryVaultRepository
from familyvault.service import VaultService
from familyvault.storage import LocalStorageProvider, StorageCoordinator

LIGHT_KDF = dict(time_cost=1, memory_cost=8192, parallelism=1, hash_len=32, type=Type.ID)

FULL = SharingRule(can_view=True, can_upload=True, can_manage_members=True)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI tests reconfigure structlog; put the defaults back afterwards."""
    yield
    structlog.reset_defaults()


def make_member(name="Alice", role=VaultRole.OWNER) -> Member:
    profile = UserProfile(
        name=name,
        email=f"{name.lower()}@example.org",
        key_reference=SecureKeyReference(identifier=f"member.{name.lower()}"),
    )
    return Member(profile=profile, role=role)


def make_policy(required_confirmations=1, time_lock_interval=0.0) -> AccessPolicy:
    return AccessPolicy(
        sharing_rules={
            VaultRole.OWNER: FULL,
            VaultRole.ADMIN: FULL,
            VaultRole.MEMBER: SharingRule(can_view=True, can_upload=True),
            VaultRole.LEGACY_CONTACT: SharingRule(can_view=True),
        },
        legacy_rules=LegacyRule(
            time_lock_interval=time_lock_interval,
            required_confirmations=required_confirmations,
        ),
    )


@pytest.fixture
def owner() -> Member:
    return make_member()


@pytest.fixture
def repository():
    return InMemoryVaultRepository()


@pytest.fixture
def key_manager():
    return KeyManager(InMemorySecureKeystore(), InMemoryKeyStore())


@pytest.fixture
def storage(tmp_path):
    return StorageCoordinator(LocalStorageProvider(tmp_path / "blobs"))


@pytest.fixture
def service(repository, key_manager, storage):
    return VaultService(repository, key_manager, storage)


@pytest.fixture
def legacy(repository):
    return LegacyAccessManager(repository)
