"""
Vital-document checklist: which essential family documents are on file,
which are missing, and which expire soon.

Entries are seeded from `default_checklist()`. A vault item whose metadata
carries a `checklist_category` is linked to the first unlinked entry of that
category; its `expires_at` decides between PRESENT, EXPIRING_SOON and EXPIRED.
Missing or expiring entries with a due date get a reminder.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .errors import ItemNotFound
from .logging import get_logger
from .models import VaultItem, VitalCategory, utcnow

LOG = get_logger("checklist")

EXPIRY_WINDOW = timedelta(days=90)


class VitalStatus(str, Enum):
    MISSING = "missing"
    PRESENT = "present"
    EXPIRING_SOON = "expiringSoon"
    EXPIRED = "expired"


class VitalChecklistItem(BaseModel):
    id: UUID = Field(default_factory=uuid4, frozen=True)
    title: str
    category: VitalCategory
    status: VitalStatus = VitalStatus.MISSING
    due_date: Optional[datetime] = None
    vault_item_id: Optional[UUID] = None


def default_checklist() -> List[VitalChecklistItem]:
    seeds = [
        ("Primary Passport", VitalCategory.IDENTITY),
        ("Secondary Passport", VitalCategory.IDENTITY),
        ("Family Will", VitalCategory.LEGAL),
        ("Power of Attorney", VitalCategory.LEGAL),
        ("Medical Directive", VitalCategory.MEDICAL),
        ("Home Insurance Policy", VitalCategory.INSURANCE),
        ("Life Insurance Policy", VitalCategory.INSURANCE),
        ("Emergency Contacts", VitalCategory.EMERGENCY),
    ]
    return [VitalChecklistItem(title=title, category=category) for title, category in seeds]


def status_for_expiry(expires_at: Optional[datetime], now: datetime) -> VitalStatus:
    if expires_at is None or expires_at > now + EXPIRY_WINDOW:
        return VitalStatus.PRESENT
    if expires_at <= now:
        return VitalStatus.EXPIRED
    return VitalStatus.EXPIRING_SOON


class Reminder(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    checklist_id: UUID
    due_date: datetime
    message: str


class ReminderEngine:
    def __init__(self):
        self._scheduled: List[Reminder] = []
        self._lock = asyncio.Lock()

    async def schedule_reminder_if_needed(self, item: VitalChecklistItem) -> Optional[Reminder]:
        if item.due_date is None:
            return None
        if item.status == VitalStatus.MISSING:
            message = "Document reminder"
        elif item.status == VitalStatus.EXPIRING_SOON:
            message = "Document expiring soon"
        else:
            return None
        reminder = Reminder(checklist_id=item.id, due_date=item.due_date, message=message)
        async with self._lock:
            self._scheduled.append(reminder)
        LOG.info("reminder_scheduled", checklist_id=str(item.id), due=item.due_date.isoformat(), kind=item.status.value)
        return reminder

    async def reminders(self) -> List[Reminder]:
        async with self._lock:
            return list(self._scheduled)


class VitalChecklistService:
    def __init__(
        self,
        items: Optional[List[VitalChecklistItem]] = None,
        reminder_engine: Optional[ReminderEngine] = None,
        clock=utcnow,
    ):
        self._items = default_checklist() if items is None else [i.model_copy() for i in items]
        self.reminder_engine = reminder_engine or ReminderEngine()
        self.clock = clock
        self._lock = asyncio.Lock()

    async def items(self) -> List[VitalChecklistItem]:
        async with self._lock:
            return [i.model_copy() for i in self._items]

    async def item(self, item_id: UUID) -> Optional[VitalChecklistItem]:
        async with self._lock:
            for entry in self._items:
                if entry.id == item_id:
                    return entry.model_copy()
        return None

    async def checklist_progress(self) -> float:
        """Share of entries with status PRESENT; 0.0 for an empty checklist."""
        async with self._lock:
            if not self._items:
                return 0.0
            present = sum(1 for i in self._items if i.status == VitalStatus.PRESENT)
            return present / len(self._items)

    async def update(
        self,
        item_id: UUID,
        status: VitalStatus,
        due_date: Optional[datetime] = None,
        vault_item_id: Optional[UUID] = None,
    ) -> VitalChecklistItem:
        """Replace status, due date and linked vault item of one entry."""
        async with self._lock:
            entry = next((i for i in self._items if i.id == item_id), None)
            if entry is None:
                raise ItemNotFound(f"Checklist entry {item_id} does not exist.")
            snapshot = self._apply(entry, status, due_date, vault_item_id)
        await self.reminder_engine.schedule_reminder_if_needed(snapshot)
        return snapshot

    def _apply(self, entry, status, due_date, vault_item_id) -> VitalChecklistItem:
        entry.status = status
        entry.due_date = due_date
        entry.vault_item_id = vault_item_id
        LOG.info("checklist_updated", checklist_id=str(entry.id), status=status.value)
        return entry.model_copy()

    async def missing_items(self) -> List[VitalChecklistItem]:
        async with self._lock:
            return [i.model_copy() for i in self._items if i.status == VitalStatus.MISSING]

    async def expiring_soon_items(self, reference: Optional[datetime] = None) -> List[VitalChecklistItem]:
        reference = reference or self.clock()
        async with self._lock:
            return [
                i.model_copy() for i in self._items
                if i.status == VitalStatus.EXPIRING_SOON and i.due_date is not None and i.due_date > reference
            ]

    async def link_vault_item(self, vault_item: VaultItem) -> Optional[VitalChecklistItem]:
        """
        Attach an uploaded item to the first entry of its checklist category that
        has no vault item yet. Returns None when the item has no category or
        every entry of that category is already linked.
        """
        category = vault_item.metadata.checklist_category
        if category is None:
            return None
        expires_at = vault_item.metadata.expires_at
        async with self._lock:
            entry = next((i for i in self._items if i.category == category and i.vault_item_id is None), None)
            if entry is None:
                return None
            snapshot = self._apply(entry, status_for_expiry(expires_at, self.clock()), expires_at, vault_item.id)
        await self.reminder_engine.schedule_reminder_if_needed(snapshot)
        return snapshot
