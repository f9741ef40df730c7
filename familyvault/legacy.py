"""
Legacy access: designated contacts unlock a vault after a time lock and a
quorum of distinct confirmations.

    NOT_STARTED --schedule--> CHECKING --confirm--> LOCKED --quorum + time lock--> UNLOCKED

Confirmations are recorded per vault in a `LegacyAccessRequest`, so each
distinct confirmer counts once no matter how many calls are made. Unlock
requires both the quorum and `time_lock_interval` seconds elapsed since the
check was scheduled.
"""

import asyncio
import pathlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ValidationError

from .errors import StorageFailure, UserNotAuthorized
from .fsutil import safe_read_bytes, secure_mkdir, write_secure_file
from .logging import get_logger, log_audit
from .models import AccessPolicy, AuditAction, AuditEvent, Member, Vault, utcnow
from .repository import VaultRepository
from .service import authorize

LOG = get_logger("security")


class LegacyAccessPhase(str, Enum):
    NOT_STARTED = "notStarted"
    CHECKING = "checking"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class LegacyAccessRequest(BaseModel):
    vault_id: UUID
    scheduled_at: datetime
    confirmers: List[UUID] = []
    unlocked_at: Optional[datetime] = None


class LegacyAccessState(BaseModel):
    """Per-request view of a vault's legacy access."""
    policy: AccessPolicy
    confirmations: int = 0
    is_unlocked: bool = False
    phase: LegacyAccessPhase = LegacyAccessPhase.NOT_STARTED
    unlock_not_before: Optional[datetime] = None


class LegacyRequestStore(ABC):

    @abstractmethod
    async def load(self, vault_id: UUID) -> Optional[LegacyAccessRequest]: ...

    @abstractmethod
    async def save(self, request: LegacyAccessRequest) -> None: ...


class InMemoryLegacyRequestStore(LegacyRequestStore):
    def __init__(self):
        self._requests: Dict[UUID, LegacyAccessRequest] = {}

    async def load(self, vault_id: UUID) -> Optional[LegacyAccessRequest]:
        request = self._requests.get(vault_id)
        return request.model_copy(deep=True) if request else None

    async def save(self, request: LegacyAccessRequest) -> None:
        self._requests[request.vault_id] = request.model_copy(deep=True)


class JsonFileLegacyRequestStore(LegacyRequestStore):
    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)

    def _path(self, vault_id: UUID) -> pathlib.Path:
        return self.root / f"{vault_id}.legacy.json"

    def _read(self, vault_id: UUID) -> Optional[LegacyAccessRequest]:
        path = self._path(vault_id)
        if not path.exists():
            return None
        return LegacyAccessRequest.model_validate_json(safe_read_bytes(path))

    def _write(self, request: LegacyAccessRequest):
        secure_mkdir(self.root, "Legacy request directory")
        write_secure_file(self._path(request.vault_id), request.model_dump_json(indent=2).encode())

    async def load(self, vault_id: UUID) -> Optional[LegacyAccessRequest]:
        try:
            return await asyncio.to_thread(self._read, vault_id)
        except (OSError, RuntimeError, ValidationError) as exc:
            raise StorageFailure(str(exc)) from exc

    async def save(self, request: LegacyAccessRequest) -> None:
        try:
            await asyncio.to_thread(self._write, request)
        except (OSError, RuntimeError) as exc:
            raise StorageFailure(str(exc)) from exc


class LegacyAccessManager:
    def __init__(self, repository: VaultRepository, requests: LegacyRequestStore | None = None, clock=utcnow):
        self.repository = repository
        self.requests = requests or InMemoryLegacyRequestStore()
        self.clock = clock
        self._lock = asyncio.Lock()

    def _unlock_not_before(self, vault: Vault, request: LegacyAccessRequest) -> datetime:
        return request.scheduled_at + timedelta(seconds=vault.policy.legacy_rules.time_lock_interval)

    def _state(self, vault: Vault, request: Optional[LegacyAccessRequest]) -> LegacyAccessState:
        if request is None:
            return LegacyAccessState(policy=vault.policy)
        if request.unlocked_at is not None:
            phase = LegacyAccessPhase.UNLOCKED
        elif request.confirmers:
            phase = LegacyAccessPhase.LOCKED
        else:
            phase = LegacyAccessPhase.CHECKING
        return LegacyAccessState(
            policy=vault.policy,
            confirmations=len(request.confirmers),
            is_unlocked=request.unlocked_at is not None,
            phase=phase,
            unlock_not_before=self._unlock_not_before(vault, request),
        )

    def _try_unlock(self, vault: Vault, request: LegacyAccessRequest) -> bool:
        """Mark the request unlocked when quorum and time lock are both satisfied."""
        if request.unlocked_at is not None:
            return False
        quorum = len(request.confirmers) >= vault.policy.legacy_rules.required_confirmations
        if not quorum or not request.confirmers:
            return False
        now = self.clock()
        if now < self._unlock_not_before(vault, request):
            return False
        request.unlocked_at = now
        LOG.warning("legacy_access_unlocked", vault_id=str(vault.id), confirmations=len(request.confirmers))
        return True

    async def schedule_legacy_access_check(self, vault_id: UUID) -> LegacyAccessState:
        """Start a fresh request: zero confirmations, locked, time lock running from now."""
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            request = LegacyAccessRequest(vault_id=vault_id, scheduled_at=self.clock())
            await self.requests.save(request)
        LOG.info("legacy_check_scheduled", vault_id=str(vault_id),
                 time_lock=vault.policy.legacy_rules.time_lock_interval,
                 required=vault.policy.legacy_rules.required_confirmations)
        return self._state(vault, request)

    async def confirm_legacy_access(self, vault_id: UUID, confirmer: Member) -> LegacyAccessState:
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            try:
                # the vault record decides the role, not the caller
                authorize(vault, confirmer, lambda rule: rule.can_manage_members)
            except UserNotAuthorized:
                LOG.warning("legacy_confirmation_refused", vault_id=str(vault_id), confirmer=str(confirmer.id))
                raise
            request = await self.requests.load(vault_id)
            if request is None:
                request = LegacyAccessRequest(vault_id=vault_id, scheduled_at=self.clock())
            if confirmer.id not in request.confirmers:
                request.confirmers.append(confirmer.id)
            unlocked = self._try_unlock(vault, request)
            await self.requests.save(request)
        LOG.info("legacy_confirmation_recorded", vault_id=str(vault_id), confirmer=str(confirmer.id),
                 confirmations=len(request.confirmers))
        if unlocked:
            log_audit(LOG, AuditEvent(actor_id=confirmer.id, action=AuditAction.LEGACY_UNLOCKED, target_id=vault_id))
        return self._state(vault, request)

    async def legacy_access_state(self, vault_id: UUID) -> LegacyAccessState:
        """Current view; a quorum waiting on the time lock unlocks once it has elapsed."""
        async with self._lock:
            vault = await self.repository.fetch_vault(vault_id)
            request = await self.requests.load(vault_id)
            if request is not None and self._try_unlock(vault, request):
                await self.requests.save(request)
        return self._state(vault, request)
