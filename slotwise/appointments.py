import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .availability import BLOCKING_STATUSES, invalidate_availability_cache, normalize_uuid_list
from .config import settings
from .core.fields import UNSET, is_set
from .core.timezones import to_utc_naive
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Appointment, Calendar
from .tenancy import require_active_user

logger = structlog.get_logger("slotwise.appointments")

APPOINTMENT_STATUSES = ("pending", "confirmed", "completed", "cancelled")


@dataclass
class AppointmentUpdate:
    start_time: Any = UNSET
    end_time: Any = UNSET
    status: Any = UNSET
    notes: Any = UNSET
    metadata: Any = UNSET


def validate_time_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Normalise to naive UTC and enforce ordering and the minimum duration."""
    if start is None or end is None:
        raise ValidationError("Invalid appointment time")
    start_utc = to_utc_naive(start)
    end_utc = to_utc_naive(end)
    if end_utc <= start_utc:
        raise ValidationError("Appointment end must be after start", field="end_time")
    if end_utc - start_utc < timedelta(minutes=settings.MIN_BOOKING_MINUTES):
        raise ValidationError(
            f"Appointments must be at least {settings.MIN_BOOKING_MINUTES} minutes",
            field="end_time",
        )
    return start_utc, end_utc


def find_conflicting_appointments(
    db: Session,
    calendar_ids: Iterable[uuid.UUID],
    start: datetime,
    end: datetime,
    exclude_id: uuid.UUID | None = None,
) -> list[Appointment]:
    ids = list(calendar_ids)
    if not ids:
        return []
    q = select(Appointment).where(
        Appointment.calendar_id.in_(ids),
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if exclude_id is not None:
        q = q.where(Appointment.id != exclude_id)
    return list(db.execute(q.order_by(Appointment.start_time.asc())).scalars())


def conflict_payload(rows: list[Appointment]) -> list[dict]:
    return [
        {
            "id": str(row.id),
            "calendar_id": str(row.calendar_id),
            "start_time": row.start_time.isoformat(),
            "end_time": row.end_time.isoformat(),
            "status": row.status,
        }
        for row in rows
    ]


def _get_calendar(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID) -> Calendar:
    calendar = db.execute(
        select(Calendar).where(Calendar.tenant_id == tenant_id, Calendar.id == calendar_id)
    ).scalar_one_or_none()
    if calendar is None:
        raise NotFoundError("Calendar not found")
    return calendar


def create_appointment(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    calendar_id: uuid.UUID,
    client_user_id: uuid.UUID,
    start_time: datetime,
    end_time: datetime,
    required_skills: list[Any] | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
) -> Appointment:
    calendar = _get_calendar(db, tenant_id, calendar_id)
    require_active_user(db, tenant_id, client_user_id, "Client")
    start, end = validate_time_range(start_time, end_time)

    conflicts = find_conflicting_appointments(db, [calendar.id], start, end)
    if conflicts:
        raise ConflictError("Appointment conflicts with existing booking", conflicts=conflict_payload(conflicts))

    skills = normalize_uuid_list(required_skills, "required_skills")
    if skills:
        missing = [s for s in skills if s not in set(calendar.skill_ids)]
        if missing:
            raise ValidationError(
                "Calendar does not support required skills",
                missing_skills=[str(s) for s in missing],
            )

    appointment = Appointment(
        tenant_id=tenant_id,
        calendar_id=calendar.id,
        client_user_id=client_user_id,
        start_time=start,
        end_time=end,
        status="pending",
        required_skills=[str(s) for s in skills] or None,
        notes=notes,
        metadata_json=metadata,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    invalidate_availability_cache(tenant_id)
    logger.info(
        "appointment_created",
        tenant_id=str(tenant_id),
        appointment_id=str(appointment.id),
        calendar_id=str(calendar.id),
    )
    return appointment


def list_appointments(
    db: Session,
    tenant_id: uuid.UUID,
    calendar_id: uuid.UUID,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Appointment]:
    _get_calendar(db, tenant_id, calendar_id)
    q = select(Appointment).where(
        Appointment.tenant_id == tenant_id,
        Appointment.calendar_id == calendar_id,
    )
    if start is not None:
        q = q.where(Appointment.end_time > to_utc_naive(start))
    if end is not None:
        q = q.where(Appointment.start_time < to_utc_naive(end))
    return list(db.execute(q.order_by(Appointment.start_time.asc())).scalars())


def get_appointment(db: Session, tenant_id: uuid.UUID, appointment_id: uuid.UUID) -> Appointment:
    appointment = db.execute(
        select(Appointment).where(Appointment.tenant_id == tenant_id, Appointment.id == appointment_id)
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


def update_appointment(
    db: Session,
    tenant_id: uuid.UUID,
    appointment_id: uuid.UUID,
    changes: AppointmentUpdate,
) -> Appointment:
    appointment = get_appointment(db, tenant_id, appointment_id)

    if is_set(changes.start_time) or is_set(changes.end_time):
        start, end = validate_time_range(
            changes.start_time if is_set(changes.start_time) else appointment.start_time,
            changes.end_time if is_set(changes.end_time) else appointment.end_time,
        )
        conflicts = find_conflicting_appointments(
            db, [appointment.calendar_id], start, end, exclude_id=appointment.id
        )
        if conflicts:
            raise ConflictError(
                "Appointment conflicts with existing booking", conflicts=conflict_payload(conflicts)
            )
        appointment.start_time = start
        appointment.end_time = end

    if is_set(changes.status):
        if changes.status not in APPOINTMENT_STATUSES:
            raise ValidationError("Invalid appointment status", field="status")
        appointment.status = changes.status

    if is_set(changes.notes):
        appointment.notes = changes.notes
    if is_set(changes.metadata):
        appointment.metadata_json = changes.metadata

    db.commit()
    db.refresh(appointment)
    invalidate_availability_cache(tenant_id)
    logger.info("appointment_updated", tenant_id=str(tenant_id), appointment_id=str(appointment.id), status=appointment.status)
    return appointment


def cancel_appointment(db: Session, tenant_id: uuid.UUID, appointment_id: uuid.UUID) -> Appointment:
    return update_appointment(db, tenant_id, appointment_id, AppointmentUpdate(status="cancelled"))


def delete_appointment(db: Session, tenant_id: uuid.UUID, appointment_id: uuid.UUID) -> None:
    appointment = get_appointment(db, tenant_id, appointment_id)
    db.delete(appointment)
    db.commit()
    invalidate_availability_cache(tenant_id)
    logger.info("appointment_deleted", tenant_id=str(tenant_id), appointment_id=str(appointment_id))
