"""
Vault lifecycle and document custody.

Per-item keys are derived, never stored:

    item_key = SHA256(vault_key_ref.identifier || str(item_id))

so any holder of the vault record can re-derive the key for an item id. The
vault key generated at creation is wrapped for the owner and then dropped;
item sealing does not depend on it.
"""

import asyncio
from typing import Callable, Iterable, List
from uuid import UUID, uuid4

from .checklist import VitalChecklistService
from .envelope import EnvelopeSealer, Envelope, encode_reference, decode_reference
from .errors import InvalidPolicy, UserNotAuthorized
from .keys import KeyManager
from .logging import get_logger, log_audit
from .models import (
    AccessPolicy,
    AuditAction,
    AuditEvent,
    Member,
    SecureKeyReference,
    SharingRule,
    Vault,
    VaultItem,
    VaultItemMetadata,
    VaultItemType,
    utcnow,
)
from .crypto import sha256, zero_bytes
from .repository import VaultRepository
from .storage import StorageCoordinator

SECURITY_LOG = get_logger("security")
STORAGE_LOG = get_logger("storage")


def derive_item_key(vault_key_ref: SecureKeyReference, item_id: UUID) -> bytes:
    """Deterministic per-item key; distinct item ids give unrelated keys."""
    return sha256((vault_key_ref.identifier + str(item_id)).encode("utf-8"))


def validate_policy(policy: AccessPolicy):
    rules = policy.legacy_rules
    if rules.time_lock_interval < 0:
        raise InvalidPolicy("Legacy time lock cannot be negative.")
    if rules.required_confirmations < 0:
        raise InvalidPolicy("Required confirmations cannot be negative.")


def authorize(vault: Vault, member: Member, capability: Callable[[SharingRule], bool] | None = None) -> Member:
    """Return the vault's own record for `member`, or raise UserNotAuthorized."""
    known = vault.member(member.id)
    if known is None:
        raise UserNotAuthorized()
    if capability is not None and not capability(vault.policy.rule_for(known.role)):
        raise UserNotAuthorized()
    return known


class VaultService:
    def __init__(
        self,
        repository: VaultRepository,
        key_manager: KeyManager,
        storage: StorageCoordinator,
        clock=utcnow,
        checklist: VitalChecklistService | None = None,
    ):
        self.repository = repository
        self.key_manager = key_manager
        self.storage = storage
        self.sealer = EnvelopeSealer()
        self.clock = clock
        self.checklist = checklist
        self._lock = asyncio.Lock()

    async def create_vault(self, name: str, owner: Member, policy: AccessPolicy) -> Vault:
        """
        Create a vault owned by `owner` and wrap a fresh vault key for them.

        Known gaps: wrapped keys are stored under the owner's key identifier
        alone, so a second vault created by the same owner replaces the first
        vault's wrapped key and `recover_vault_key` returns the newer one.
        Invitees never receive a wrap (see `invite`).
        """
        validate_policy(policy)
        async with self._lock:
            vault_key = bytearray(self.key_manager.generate_vault_key())
            try:
                await self.key_manager.wrap(bytes(vault_key), owner.profile)
            finally:
                zero_bytes(vault_key)
            vault = Vault(
                name=name,
                members=[owner],
                policy=policy,
                vault_key_ref=owner.profile.key_reference,
            )
            await self.repository.save_vault(vault)
        SECURITY_LOG.info("vault_created", vault_id=str(vault.id), owner=str(owner.id))
        log_audit(SECURITY_LOG, AuditEvent(actor_id=owner.id, action=AuditAction.VAULT_CREATED, target_id=vault.id))
        return vault

    async def list_vaults(self) -> List[Vault]:
        return await self.repository.list_vaults()

    async def invite(self, member: Member, vault_id: UUID) -> None:
        """
        Add `member` to the vault; a no-op if already present.

        The vault key is not wrapped for the invitee here.
        """
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            if vault.has_member(member.id):
                return
            vault.members.append(member)
            await self.repository.update_vault(vault)
        SECURITY_LOG.info("member_invited", vault_id=str(vault_id), member=str(member.id), role=member.role.value)
        log_audit(SECURITY_LOG, AuditEvent(
            actor_id=member.id,
            action=AuditAction.VAULT_UPDATED,
            target_id=vault_id,
            metadata={"change": "member_added"},
        ))

    async def upload(
        self,
        data: bytes,
        metadata: VaultItemMetadata,
        vault_id: UUID,
        member: Member,
        item_type: VaultItemType = VaultItemType.DOCUMENT,
        tags: Iterable[str] = (),
    ) -> VaultItem:
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            authorize(vault, member)
            item_id = uuid4()
            key = derive_item_key(vault.vault_key_ref, item_id)
            envelope = self.sealer.seal(data, metadata.redacted_attributes, key)
            now = self.clock()
            item = VaultItem(
                id=item_id,
                vault_id=vault_id,
                type=item_type,
                encrypted_blob_reference=encode_reference(envelope),
                tags=list(tags),
                created_at=now,
                updated_at=now,
                metadata=metadata,
            )
            await self.storage.save_item(item, envelope.to_bytes())
            await self.repository.update_vault(vault)
        STORAGE_LOG.info("item_uploaded", item_id=str(item.id), vault_id=str(vault_id), size=len(data))
        if self.checklist is not None:
            await self.checklist.link_vault_item(item)
        log_audit(SECURITY_LOG, AuditEvent(actor_id=member.id, action=AuditAction.ITEM_UPLOADED, target_id=item.id))
        return item

    async def items(self, vault_id: UUID) -> List[VaultItem]:
        return await self.storage.list_items(vault_id)

    async def _open(self, envelope: Envelope, item_id: UUID, vault_id: UUID, member: Member) -> bytes:
        vault = await self.repository.fetch_vault(vault_id)
        authorize(vault, member, lambda rule: rule.can_view)
        key = derive_item_key(vault.vault_key_ref, item_id)
        plaintext = self.sealer.open(envelope, key)
        log_audit(SECURITY_LOG, AuditEvent(actor_id=member.id, action=AuditAction.ITEM_DECRYPTED, target_id=item_id))
        return plaintext

    async def decrypt(self, item: VaultItem, member: Member) -> bytes:
        """Open the envelope carried in the item's blob reference."""
        envelope = decode_reference(item.encrypted_blob_reference)
        return await self._open(envelope, item.id, item.vault_id, member)

    async def fetch_and_decrypt(self, item_id: UUID, vault_id: UUID, member: Member) -> bytes:
        """Open the envelope held by the blob store rather than the inline reference."""
        envelope = Envelope.from_bytes(await self.storage.fetch_item(item_id, vault_id))
        return await self._open(envelope, item_id, vault_id, member)

    async def remove_item(self, item_id: UUID, vault_id: UUID, member: Member) -> None:
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            authorize(vault, member, lambda rule: rule.can_upload)
            await self.storage.delete_item(item_id, vault_id)
        STORAGE_LOG.info("item_removed", item_id=str(item_id), vault_id=str(vault_id))
        log_audit(SECURITY_LOG, AuditEvent(actor_id=member.id, action=AuditAction.ITEM_REMOVED, target_id=item_id))

