import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .appointments import conflict_payload, find_conflicting_appointments
from .core.fields import UNSET, dedupe_by, is_set
from .core.timezones import to_utc_naive
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    Calendar,
    GroupAppointment,
    GroupAppointmentParticipant,
    GroupAppointmentProvider,
    User,
    utc_now_naive,
)
from .tenancy import load_tenant_users, require_active_user

logger = structlog.get_logger("slotwise.group_appointments")

GROUP_STATUSES = ("scheduled", "confirmed", "completed", "cancelled")
PROVIDER_STATUSES = ("pending", "confirmed", "declined")
PARTICIPANT_STATUSES = ("invited", "confirmed", "declined", "cancelled")
MIN_GROUP_MINUTES = 15


@dataclass
class ProviderInput:
    user_id: uuid.UUID | None
    calendar_id: uuid.UUID | None = None


@dataclass
class ParticipantInput:
    user_id: uuid.UUID | None
    metadata: dict | None = None


@dataclass
class GroupAppointmentUpdate:
    name: Any = UNSET
    description: Any = UNSET
    start_time: Any = UNSET
    end_time: Any = UNSET
    duration_minutes: Any = UNSET
    max_participants: Any = UNSET
    status: Any = UNSET
    metadata: Any = UNSET
    providers: Any = UNSET
    participants: Any = UNSET


def normalize_members(items: Iterable[Any] | None) -> list[Any]:
    """Drop entries without a user id and keep the first entry per user id."""
    return dedupe_by(items or [], key=lambda item: getattr(item, "user_id", None))


def _assert_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    if start is None or end is None:
        raise ValidationError("start_time and end_time must be valid ISO timestamps")
    start_utc = to_utc_naive(start)
    end_utc = to_utc_naive(end)
    if end_utc <= start_utc:
        raise ValidationError("end_time must be after start_time", field="end_time")
    return start_utc, end_utc


def _ensure_active_members(db: Session, tenant_id: uuid.UUID, user_ids: list[uuid.UUID], label: str) -> None:
    users: dict[uuid.UUID, User] = load_tenant_users(db, tenant_id, user_ids)
    for user_id in user_ids:
        user = users.get(user_id)
        if user is None:
            raise ValidationError(f"{label} must belong to tenant", user_id=str(user_id))
        if user.status != "active":
            raise ValidationError(f"{label} must be active", user_id=str(user_id))


def _ensure_provider_calendars(db: Session, tenant_id: uuid.UUID, providers: list[ProviderInput]) -> list[uuid.UUID]:
    """Check each provider calendar exists, is active and is owned by that provider."""
    wanted = [p for p in providers if p.calendar_id is not None]
    if not wanted:
        return []
    calendars = {
        c.id: c
        for c in db.execute(
            select(Calendar).where(
                Calendar.tenant_id == tenant_id,
                Calendar.id.in_({p.calendar_id for p in wanted}),
            )
        ).scalars()
    }
    for provider in wanted:
        calendar = calendars.get(provider.calendar_id)
        if calendar is None:
            raise NotFoundError("Calendar not found", calendar_id=str(provider.calendar_id))
        if calendar.provider_user_id != provider.user_id:
            raise ValidationError("Calendar must belong to provider", calendar_id=str(calendar.id))
        if not calendar.is_active:
            raise ValidationError("Calendar must be active", calendar_id=str(calendar.id))
    return [p.calendar_id for p in wanted]


def _ensure_calendars_free(db: Session, calendar_ids: list[uuid.UUID], start: datetime, end: datetime) -> None:
    if not calendar_ids:
        return
    conflicts = find_conflicting_appointments(db, calendar_ids, start, end)
    if conflicts:
        raise ConflictError(
            "Calendar is not available for the selected time window",
            conflicts=conflict_payload(conflicts),
        )


def create_group_appointment(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    name: str,
    start_time: datetime,
    end_time: datetime,
    created_by: uuid.UUID,
    providers: list[ProviderInput],
    participants: list[ParticipantInput] | None = None,
    description: str | None = None,
    duration_minutes: int | None = None,
    max_participants: int | None = None,
    metadata: dict | None = None,
) -> GroupAppointment:
    if not providers:
        raise ValidationError("At least one provider is required", field="providers")
    start, end = _assert_range(start_time, end_time)

    provider_records = normalize_members(providers)
    participant_records = normalize_members(participants)
    if not provider_records:
        raise ValidationError("At least one provider is required", field="providers")

    duration = duration_minutes
    if duration is None:
        duration = max(MIN_GROUP_MINUTES, round((end - start).total_seconds() / 60))
    elif int(duration) < MIN_GROUP_MINUTES:
        raise ValidationError(
            f"duration_minutes must be at least {MIN_GROUP_MINUTES}", field="duration_minutes"
        )
    allowed = max_participants if max_participants is not None else max(1, len(participant_records))
    if allowed <= 0:
        raise ValidationError("max_participants must be greater than 0", field="max_participants")
    if allowed < len(participant_records):
        raise ValidationError("max_participants cannot be less than participant count", field="max_participants")

    require_active_user(db, tenant_id, created_by, "Creator")
    _ensure_active_members(db, tenant_id, [p.user_id for p in provider_records], "Provider")
    calendar_ids = _ensure_provider_calendars(db, tenant_id, provider_records)
    _ensure_calendars_free(db, calendar_ids, start, end)
    _ensure_active_members(db, tenant_id, [p.user_id for p in participant_records], "Participant")

    try:
        group = GroupAppointment(
            tenant_id=tenant_id,
            name=name,
            description=description,
            start_time=start,
            end_time=end,
            duration_minutes=int(duration),
            max_participants=int(allowed),
            status="scheduled",
            created_by=created_by,
            metadata_json=metadata,
        )
        db.add(group)
        db.flush()
        for position, provider in enumerate(provider_records):
            db.add(
                GroupAppointmentProvider(
                    group_appointment_id=group.id,
                    provider_user_id=provider.user_id,
                    calendar_id=provider.calendar_id,
                    position=position,
                    status="pending",
                )
            )
        db.flush()
        for position, participant in enumerate(participant_records):
            db.add(
                GroupAppointmentParticipant(
                    group_appointment_id=group.id,
                    participant_user_id=participant.user_id,
                    position=position,
                    status="invited",
                    metadata_json=participant.metadata,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "group_appointment_created",
        tenant_id=str(tenant_id),
        group_appointment_id=str(group.id),
        providers=len(provider_records),
        participants=len(participant_records),
    )
    db.refresh(group)
    return group


def list_group_appointments(
    db: Session,
    tenant_id: uuid.UUID,
    status: str | None = None,
    provider_user_id: uuid.UUID | None = None,
    participant_user_id: uuid.UUID | None = None,
) -> list[GroupAppointment]:
    q = select(GroupAppointment).where(GroupAppointment.tenant_id == tenant_id)
    if status:
        q = q.where(GroupAppointment.status == status)
    if provider_user_id is not None:
        q = q.where(
            GroupAppointment.providers.any(GroupAppointmentProvider.provider_user_id == provider_user_id)
        )
    if participant_user_id is not None:
        q = q.where(
            GroupAppointment.participants.any(
                GroupAppointmentParticipant.participant_user_id == participant_user_id
            )
        )
    return list(db.execute(q.order_by(GroupAppointment.start_time.asc())).scalars())


def get_group_appointment(db: Session, tenant_id: uuid.UUID, group_id: uuid.UUID) -> GroupAppointment:
    group = db.execute(
        select(GroupAppointment).where(
            GroupAppointment.tenant_id == tenant_id,
            GroupAppointment.id == group_id,
        )
    ).scalar_one_or_none()
    if group is None:
        raise NotFoundError("Group appointment not found")
    return group


def _replace_providers(group: GroupAppointment, records: list[ProviderInput]) -> None:
    current = {p.provider_user_id: p for p in group.providers}
    rows = []
    for position, record in enumerate(records):
        row = current.get(record.user_id)
        if row is None:
            row = GroupAppointmentProvider(provider_user_id=record.user_id, status="pending")
        row.calendar_id = record.calendar_id
        row.position = position
        rows.append(row)
    group.providers = rows


def _replace_participants(group: GroupAppointment, records: list[ParticipantInput]) -> None:
    current = {p.participant_user_id: p for p in group.participants}
    rows = []
    for position, record in enumerate(records):
        row = current.get(record.user_id)
        if row is None:
            row = GroupAppointmentParticipant(participant_user_id=record.user_id, status="invited")
        if record.metadata is not None:
            row.metadata_json = record.metadata
        row.position = position
        rows.append(row)
    group.participants = rows


def update_group_appointment(
    db: Session,
    tenant_id: uuid.UUID,
    group_id: uuid.UUID,
    changes: GroupAppointmentUpdate,
) -> GroupAppointment:
    group = get_group_appointment(db, tenant_id, group_id)

    times_changed = is_set(changes.start_time) or is_set(changes.end_time)
    start, end = group.start_time, group.end_time
    if times_changed:
        start, end = _assert_range(
            changes.start_time if is_set(changes.start_time) else group.start_time,
            changes.end_time if is_set(changes.end_time) else group.end_time,
        )

    provider_records = None
    if is_set(changes.providers):
        provider_records = normalize_members(changes.providers)
        if not provider_records:
            raise ValidationError("At least one provider is required", field="providers")
        _ensure_active_members(db, tenant_id, [p.user_id for p in provider_records], "Provider")
        calendar_ids = _ensure_provider_calendars(db, tenant_id, provider_records)
        if not times_changed:
            # only newly attached calendars need a conflict check
            attached = {p.calendar_id for p in group.providers}
            calendar_ids = [c for c in calendar_ids if c not in attached]
        _ensure_calendars_free(db, calendar_ids, start, end)
    elif times_changed:
        _ensure_calendars_free(db, [p.calendar_id for p in group.providers if p.calendar_id is not None], start, end)

    participant_records = None
    if is_set(changes.participants):
        participant_records = normalize_members(changes.participants)
        _ensure_active_members(db, tenant_id, [p.user_id for p in participant_records], "Participant")

    if is_set(changes.status) and changes.status not in GROUP_STATUSES:
        raise ValidationError("Invalid status value", field="status")

    participant_count = len(participant_records) if participant_records is not None else len(group.participants)
    max_participants = group.max_participants
    if is_set(changes.max_participants):
        if changes.max_participants is None or int(changes.max_participants) <= 0:
            raise ValidationError("max_participants must be greater than 0", field="max_participants")
        max_participants = int(changes.max_participants)
    if max_participants < participant_count:
        raise ValidationError("max_participants cannot be less than participant count", field="max_participants")

    if is_set(changes.duration_minutes) and (
        changes.duration_minutes is None or int(changes.duration_minutes) < MIN_GROUP_MINUTES
    ):
        raise ValidationError(
            f"duration_minutes must be at least {MIN_GROUP_MINUTES}", field="duration_minutes"
        )

    try:
        group.start_time = start
        group.end_time = end
        group.max_participants = max_participants
        if is_set(changes.name):
            group.name = changes.name
        if is_set(changes.description):
            group.description = changes.description
        if is_set(changes.duration_minutes):
            group.duration_minutes = int(changes.duration_minutes)
        if is_set(changes.status):
            group.status = changes.status
        if is_set(changes.metadata):
            group.metadata_json = changes.metadata
        if provider_records is not None:
            _replace_providers(group, provider_records)
        if participant_records is not None:
            _replace_participants(group, participant_records)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(group)
    logger.info("group_appointment_updated", tenant_id=str(tenant_id), group_appointment_id=str(group.id))
    return group


def cancel_group_appointment(db: Session, tenant_id: uuid.UUID, group_id: uuid.UUID) -> GroupAppointment:
    group = get_group_appointment(db, tenant_id, group_id)
    if group.status == "cancelled":
        return group
    group.status = "cancelled"
    db.commit()
    db.refresh(group)
    logger.info("group_appointment_cancelled", tenant_id=str(tenant_id), group_appointment_id=str(group.id))
    return group


def respond_as_provider(
    db: Session,
    tenant_id: uuid.UUID,
    group_id: uuid.UUID,
    provider_user_id: uuid.UUID,
    status: str,
) -> GroupAppointment:
    if status not in PROVIDER_STATUSES:
        raise ValidationError("Invalid provider status", field="status")
    require_active_user(db, tenant_id, provider_user_id, "Provider")
    group = get_group_appointment(db, tenant_id, group_id)
    row = next((p for p in group.providers if p.provider_user_id == provider_user_id), None)
    if row is None:
        raise NotFoundError("Provider not part of group appointment")

    row.status = status
    now = utc_now_naive()
    if status == "confirmed":
        row.confirmed_at = now
    elif status == "declined":
        row.declined_at = now
    db.commit()
    db.refresh(group)
    return group


def respond_as_participant(
    db: Session,
    tenant_id: uuid.UUID,
    group_id: uuid.UUID,
    participant_user_id: uuid.UUID,
    status: str,
    metadata: Any = UNSET,
) -> GroupAppointment:
    if status not in PARTICIPANT_STATUSES:
        raise ValidationError("Invalid participant status", field="status")
    require_active_user(db, tenant_id, participant_user_id, "Participant")
    group = get_group_appointment(db, tenant_id, group_id)
    row = next((p for p in group.participants if p.participant_user_id == participant_user_id), None)
    if row is None:
        raise NotFoundError("Participant not part of group appointment")

    row.status = status
    now = utc_now_naive()
    if status == "confirmed":
        row.confirmed_at = now
    elif status == "declined":
        row.declined_at = now
    if is_set(metadata):
        row.metadata_json = metadata
    db.commit()
    db.refresh(group)
    return group


def delete_group_appointment(db: Session, tenant_id: uuid.UUID, group_id: uuid.UUID) -> None:
    group = get_group_appointment(db, tenant_id, group_id)
    db.delete(group)
    db.commit()
    logger.info("group_appointment_deleted", tenant_id=str(tenant_id), group_appointment_id=str(group_id))
