from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VaultRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    LEGACY_CONTACT = "legacyContact"


class SecureKeyReference(BaseModel):
    """Names a member's key material; never carries the key itself."""
    identifier: str
    created_at: datetime = Field(default_factory=utcnow)


class UserProfile(BaseModel):
    id: UUID = Field(default_factory=uuid4, frozen=True)
    name: str
    email: str
    key_reference: SecureKeyReference


class Member(BaseModel):
    """A profile bound to a role inside one vault."""
    id: UUID = Field(default_factory=uuid4, frozen=True)
    profile: UserProfile
    role: VaultRole
    last_seen: Optional[datetime] = None


class SharingRule(BaseModel):
    can_view: bool = False
    can_upload: bool = False
    can_manage_members: bool = False


NO_CAPABILITIES = SharingRule()


class LegacyRule(BaseModel):
    time_lock_interval: float = 0.0      # seconds
    required_confirmations: int = 1
    backup_contacts: List[UUID] = []


class AccessPolicy(BaseModel):
    sharing_rules: Dict[VaultRole, SharingRule] = {}
    legacy_rules: LegacyRule = Field(default_factory=LegacyRule)
    panic_lock_enabled: bool = True

    def rule_for(self, role: VaultRole) -> SharingRule:
        """Capabilities for `role`; unmapped roles get none."""
        return self.sharing_rules.get(role, NO_CAPABILITIES)


class Vault(BaseModel):
    id: UUID = Field(default_factory=uuid4, frozen=True)
    name: str
    members: List[Member] = []
    policy: AccessPolicy
    vault_key_ref: SecureKeyReference

    def member(self, member_id: UUID) -> Optional[Member]:
        for m in self.members:
            if m.id == member_id:
                return m
        return None

    def has_member(self, member_id: UUID) -> bool:
        return self.member(member_id) is not None


class VaultItemType(str, Enum):
    DOCUMENT = "document"
    PHOTO = "photo"
    VIDEO = "video"
    NOTE = "note"


class VitalCategory(str, Enum):
    IDENTITY = "identity"
    LEGAL = "legal"
    INSURANCE = "insurance"
    FINANCE = "finance"
    MEDICAL = "medical"
    EMERGENCY = "emergency"
    OTHER = "other"


class VaultItemMetadata(BaseModel):
    title_hint: str
    redacted_attributes: Dict[str, str] = {}
    expires_at: Optional[datetime] = None
    checklist_category: Optional[VitalCategory] = None


class VaultItem(BaseModel):
    """Index record for one sealed document; the envelope travels in `encrypted_blob_reference`."""
    id: UUID = Field(default_factory=uuid4)
    vault_id: UUID
    type: VaultItemType = VaultItemType.DOCUMENT
    encrypted_blob_reference: str
    tags: List[str] = []
    thumbnail_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: VaultItemMetadata

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]):
        """Tags are short labels stored in cleartext next to the blob."""
        for tag in v:
            if not tag or len(tag) > 64:
                raise ValueError("tags must be 1-64 characters long")
        return v


class ItemIndex(BaseModel):
    """Per-vault metadata index persisted next to the blobs."""
    items: List[VaultItem] = []


class AuditAction(str, Enum):
    VAULT_CREATED = "vaultCreated"
    VAULT_UPDATED = "vaultUpdated"
    ITEM_UPLOADED = "itemUploaded"
    ITEM_DECRYPTED = "itemDecrypted"
    ITEM_REMOVED = "itemRemoved"
    LEGACY_UNLOCKED = "legacyUnlocked"


class AuditEvent(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    actor_id: UUID
    action: AuditAction
    target_id: UUID
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, str] = {}
