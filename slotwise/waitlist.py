import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .core.fields import UNSET, is_set
from .core.timezones import to_utc_naive
from .errors import NotFoundError, ValidationError
from .models import WaitlistEntry, utc_now_naive
from .tenancy import require_active_user

logger = structlog.get_logger("slotwise.waitlist")

WAITLIST_PRIORITIES = ("low", "medium", "high")
WAITLIST_STATUSES = ("active", "promoted", "cancelled")


@dataclass
class WaitlistUpdate:
    client_user_id: Any = UNSET
    provider_user_id: Any = UNSET
    priority: Any = UNSET
    status: Any = UNSET
    requested_start: Any = UNSET
    requested_end: Any = UNSET
    auto_promote: Any = UNSET
    notes: Any = UNSET
    metadata: Any = UNSET


def _validate_window(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and to_utc_naive(end) <= to_utc_naive(start):
        raise ValidationError("requested_end must be after requested_start", field="requested_end")


def _validate_priority(priority: str) -> str:
    if priority not in WAITLIST_PRIORITIES:
        raise ValidationError("Invalid waitlist priority", field="priority")
    return priority


def _optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_naive(value) if value is not None else None


def create_entry(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    client_user_id: uuid.UUID,
    provider_user_id: uuid.UUID | None = None,
    priority: str | None = None,
    requested_start: datetime | None = None,
    requested_end: datetime | None = None,
    auto_promote: bool = False,
    notes: str | None = None,
    metadata: dict | None = None,
) -> WaitlistEntry:
    require_active_user(db, tenant_id, client_user_id, "Client")
    if provider_user_id is not None:
        require_active_user(db, tenant_id, provider_user_id, "Provider")
    _validate_window(requested_start, requested_end)

    entry = WaitlistEntry(
        tenant_id=tenant_id,
        client_user_id=client_user_id,
        provider_user_id=provider_user_id,
        priority=_validate_priority(priority or "medium"),
        status="active",
        requested_start=_optional_utc(requested_start),
        requested_end=_optional_utc(requested_end),
        auto_promote=bool(auto_promote),
        notes=notes,
        metadata_json=metadata,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("waitlist_entry_created", tenant_id=str(tenant_id), entry_id=str(entry.id), priority=entry.priority)
    return entry


def list_entries(
    db: Session,
    tenant_id: uuid.UUID,
    status: str | None = None,
    provider_user_id: uuid.UUID | None = None,
    priority: str | None = None,
) -> list[WaitlistEntry]:
    q = select(WaitlistEntry).where(WaitlistEntry.tenant_id == tenant_id)
    if status:
        q = q.where(WaitlistEntry.status == status)
    if provider_user_id is not None:
        q = q.where(WaitlistEntry.provider_user_id == provider_user_id)
    if priority:
        q = q.where(WaitlistEntry.priority == priority)
    return list(db.execute(q.order_by(WaitlistEntry.created_at.asc())).scalars())


def get_entry(db: Session, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> WaitlistEntry:
    entry = db.execute(
        select(WaitlistEntry).where(WaitlistEntry.tenant_id == tenant_id, WaitlistEntry.id == entry_id)
    ).scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Waitlist entry not found")
    return entry


def update_entry(db: Session, tenant_id: uuid.UUID, entry_id: uuid.UUID, changes: WaitlistUpdate) -> WaitlistEntry:
    entry = get_entry(db, tenant_id, entry_id)

    if is_set(changes.requested_start) or is_set(changes.requested_end):
        _validate_window(
            changes.requested_start if is_set(changes.requested_start) else entry.requested_start,
            changes.requested_end if is_set(changes.requested_end) else entry.requested_end,
        )
    if is_set(changes.client_user_id):
        require_active_user(db, tenant_id, changes.client_user_id, "Client")
    if is_set(changes.provider_user_id) and changes.provider_user_id is not None:
        require_active_user(db, tenant_id, changes.provider_user_id, "Provider")
    if is_set(changes.priority):
        _validate_priority(changes.priority)
    if is_set(changes.status) and changes.status not in WAITLIST_STATUSES:
        raise ValidationError("Invalid waitlist status", field="status")

    if is_set(changes.client_user_id):
        entry.client_user_id = changes.client_user_id
    if is_set(changes.provider_user_id):
        entry.provider_user_id = changes.provider_user_id
    if is_set(changes.priority):
        entry.priority = changes.priority
    if is_set(changes.status):
        entry.status = changes.status
    if is_set(changes.requested_start):
        entry.requested_start = _optional_utc(changes.requested_start)
    if is_set(changes.requested_end):
        entry.requested_end = _optional_utc(changes.requested_end)
    if is_set(changes.auto_promote):
        entry.auto_promote = bool(changes.auto_promote)
    if is_set(changes.notes):
        entry.notes = changes.notes
    if is_set(changes.metadata):
        entry.metadata_json = changes.metadata
    db.commit()
    db.refresh(entry)
    return entry


def promote_entry(db: Session, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> WaitlistEntry:
    entry = get_entry(db, tenant_id, entry_id)
    if entry.status != "active":
        raise ValidationError("Only active entries can be promoted", status=entry.status)
    entry.status = "promoted"
    entry.promoted_at = utc_now_naive()
    db.commit()
    db.refresh(entry)
    logger.info("waitlist_entry_promoted", tenant_id=str(tenant_id), entry_id=str(entry.id))
    return entry


def cancel_entry(db: Session, tenant_id: uuid.UUID, entry_id: uuid.UUID, reason: str | None = None) -> WaitlistEntry:
    entry = get_entry(db, tenant_id, entry_id)
    if entry.status == "cancelled":
        return entry
    entry.status = "cancelled"
    if reason:
        entry.notes = f"{entry.notes or ''}\nCancelled: {reason}".strip()
    db.commit()
    db.refresh(entry)
    logger.info("waitlist_entry_cancelled", tenant_id=str(tenant_id), entry_id=str(entry.id))
    return entry


def delete_entry(db: Session, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> None:
    entry = get_entry(db, tenant_id, entry_id)
    db.delete(entry)
    db.commit()
