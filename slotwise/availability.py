import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import JsonCache, get_cache
from .core.fields import UNSET, is_set
from .core.timezones import as_utc, get_zone, is_valid_timezone
from .errors import NotFoundError, ValidationError
from .models import Appointment, AvailabilitySlot, Calendar

logger = structlog.get_logger("slotwise.availability")

CACHE_NAMESPACE = "slotwise:availability"
BLOCKING_STATUSES = ("pending", "confirmed")
_TIME_RE = re.compile(r"^\d{2}:\d{2}:\d{2}$")


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def weekday_index(day: date) -> int:
    """Day of week with 0 = Sunday."""
    return day.isoweekday() % 7


# Cache keys


def availability_cache_key(
    tenant_id: uuid.UUID,
    skill_ids: Iterable[uuid.UUID],
    start_utc: datetime,
    end_utc: datetime,
    duration_minutes: int,
    tz_name: str,
) -> str:
    skills_part = ",".join(sorted(str(s) for s in skill_ids))
    return (
        f"{CACHE_NAMESPACE}:{tenant_id}:{skills_part}:"
        f"{start_utc.isoformat()}:{end_utc.isoformat()}:{int(duration_minutes)}:{tz_name}"
    )


def invalidate_availability_cache(tenant_id: uuid.UUID, cache: JsonCache | None = None) -> int:
    store = cache or get_cache()
    removed = store.delete_pattern(f"{CACHE_NAMESPACE}:{tenant_id}:*")
    logger.info("availability_cache_invalidated", tenant_id=str(tenant_id), removed=removed)
    return removed


# Templates


@dataclass
class SlotUpdate:
    day_of_week: Any = UNSET
    start_time: Any = UNSET
    end_time: Any = UNSET
    capacity: Any = UNSET
    metadata: Any = UNSET


def parse_time_of_day(value: time | str, field_name: str) -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    raw = str(value or "").strip()
    if not _TIME_RE.match(raw):
        raise ValidationError(f"{field_name} must be a valid HH:MM:SS string", field=field_name)
    try:
        return time.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be a valid HH:MM:SS string", field=field_name) from exc


def validate_slot(day_of_week: int, start_time: time, end_time: time, capacity: int) -> None:
    if not isinstance(day_of_week, int) or day_of_week < 0 or day_of_week > 6:
        raise ValidationError("day_of_week must be between 0 and 6", field="day_of_week")
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time", field="end_time")
    span = datetime.combine(date.min, end_time) - datetime.combine(date.min, start_time)
    if span < timedelta(minutes=settings.MIN_BOOKING_MINUTES):
        raise ValidationError(
            f"Availability slot must be at least {settings.MIN_BOOKING_MINUTES} minutes",
            field="end_time",
        )
    if not isinstance(capacity, int) or capacity < 1:
        raise ValidationError("capacity must be at least 1", field="capacity")


def _get_tenant_calendar(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID) -> Calendar:
    calendar = db.execute(
        select(Calendar).where(Calendar.tenant_id == tenant_id, Calendar.id == calendar_id)
    ).scalar_one_or_none()
    if calendar is None:
        raise NotFoundError("Calendar not found")
    return calendar


def _ensure_no_slot_overlap(
    db: Session,
    calendar_id: uuid.UUID,
    day_of_week: int,
    start_time: time,
    end_time: time,
    ignore_slot_id: uuid.UUID | None = None,
) -> None:
    q = select(AvailabilitySlot).where(
        AvailabilitySlot.calendar_id == calendar_id,
        AvailabilitySlot.day_of_week == day_of_week,
    )
    if ignore_slot_id is not None:
        q = q.where(AvailabilitySlot.id != ignore_slot_id)
    for slot in db.execute(q).scalars():
        if overlaps(start_time, end_time, slot.start_time, slot.end_time):
            raise ValidationError("Availability slot overlaps with existing slot", slot_id=str(slot.id))


def create_slot(
    db: Session,
    tenant_id: uuid.UUID,
    calendar_id: uuid.UUID,
    *,
    day_of_week: int,
    start_time: time | str,
    end_time: time | str,
    capacity: int | None = None,
    metadata: dict | None = None,
) -> AvailabilitySlot:
    _get_tenant_calendar(db, tenant_id, calendar_id)
    start = parse_time_of_day(start_time, "start_time")
    end = parse_time_of_day(end_time, "end_time")
    resolved_capacity = 1 if capacity is None else capacity
    validate_slot(day_of_week, start, end, resolved_capacity)
    _ensure_no_slot_overlap(db, calendar_id, day_of_week, start, end)

    slot = AvailabilitySlot(
        calendar_id=calendar_id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        capacity=resolved_capacity,
        metadata_json=metadata,
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    invalidate_availability_cache(tenant_id)
    logger.info("availability_slot_created", tenant_id=str(tenant_id), calendar_id=str(calendar_id), slot_id=str(slot.id))
    return slot


def list_slots(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID) -> list[AvailabilitySlot]:
    _get_tenant_calendar(db, tenant_id, calendar_id)
    return list(
        db.execute(
            select(AvailabilitySlot)
            .where(AvailabilitySlot.calendar_id == calendar_id)
            .order_by(AvailabilitySlot.day_of_week.asc(), AvailabilitySlot.start_time.asc())
        ).scalars()
    )


def _get_calendar_slot(db: Session, calendar_id: uuid.UUID, slot_id: uuid.UUID) -> AvailabilitySlot:
    slot = db.get(AvailabilitySlot, slot_id)
    if slot is None or slot.calendar_id != calendar_id:
        raise NotFoundError("Availability slot not found")
    return slot


def update_slot(
    db: Session,
    tenant_id: uuid.UUID,
    calendar_id: uuid.UUID,
    slot_id: uuid.UUID,
    changes: SlotUpdate,
) -> AvailabilitySlot:
    _get_tenant_calendar(db, tenant_id, calendar_id)
    slot = _get_calendar_slot(db, calendar_id, slot_id)

    day_of_week = changes.day_of_week if is_set(changes.day_of_week) else slot.day_of_week
    start = parse_time_of_day(changes.start_time, "start_time") if is_set(changes.start_time) else slot.start_time
    end = parse_time_of_day(changes.end_time, "end_time") if is_set(changes.end_time) else slot.end_time
    capacity = changes.capacity if is_set(changes.capacity) else slot.capacity

    validate_slot(day_of_week, start, end, capacity)
    _ensure_no_slot_overlap(db, calendar_id, day_of_week, start, end, ignore_slot_id=slot.id)

    slot.day_of_week = day_of_week
    slot.start_time = start
    slot.end_time = end
    slot.capacity = capacity
    if is_set(changes.metadata):
        slot.metadata_json = changes.metadata
    db.commit()
    db.refresh(slot)
    invalidate_availability_cache(tenant_id)
    return slot


def delete_slot(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID, slot_id: uuid.UUID) -> None:
    _get_tenant_calendar(db, tenant_id, calendar_id)
    slot = _get_calendar_slot(db, calendar_id, slot_id)
    db.delete(slot)
    db.commit()
    invalidate_availability_cache(tenant_id)


# Search


@dataclass
class AvailabilityWindow:
    calendar_id: uuid.UUID
    provider_user_id: uuid.UUID
    tenant_id: uuid.UUID
    slot_id: uuid.UUID
    start_utc: datetime
    end_utc: datetime
    timezone: str
    capacity: int
    available_capacity: int
    skills: list[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "calendar_id": str(self.calendar_id),
            "provider_user_id": str(self.provider_user_id),
            "tenant_id": str(self.tenant_id),
            "slot_id": str(self.slot_id),
            "start": self.start_utc.isoformat(),
            "end": self.end_utc.isoformat(),
            "timezone": self.timezone,
            "capacity": self.capacity,
            "available_capacity": self.available_capacity,
            "skills": [str(s) for s in self.skills],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "AvailabilityWindow":
        return cls(
            calendar_id=uuid.UUID(raw["calendar_id"]),
            provider_user_id=uuid.UUID(raw["provider_user_id"]),
            tenant_id=uuid.UUID(raw["tenant_id"]),
            slot_id=uuid.UUID(raw["slot_id"]),
            start_utc=datetime.fromisoformat(raw["start"]),
            end_utc=datetime.fromisoformat(raw["end"]),
            timezone=raw["timezone"],
            capacity=int(raw["capacity"]),
            available_capacity=int(raw["available_capacity"]),
            skills=[uuid.UUID(s) for s in raw.get("skills") or []],
        )


def normalize_uuid_list(values: Iterable[Any] | None, field_name: str) -> list[uuid.UUID]:
    out: list[uuid.UUID] = []
    for value in values or []:
        if isinstance(value, uuid.UUID):
            out.append(value)
            continue
        try:
            out.append(uuid.UUID(str(value)))
        except ValueError as exc:
            raise ValidationError(f"{field_name} must contain valid UUIDs", field=field_name) from exc
    return out


def _window_to_utc(value: datetime, tz_name: str) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=get_zone(tz_name))
    return as_utc(value)


def _naive(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _tile_calendar(
    calendar: Calendar,
    slots: list[AvailabilitySlot],
    appointments: list[Appointment],
    window_start: datetime,
    window_end: datetime,
    step: timedelta,
) -> list[AvailabilityWindow]:
    zone = get_zone(calendar.timezone)
    if zone is None:
        logger.warning("calendar_timezone_invalid", calendar_id=str(calendar.id), timezone=calendar.timezone)
        return []

    busy = [(as_utc(a.start_time), as_utc(a.end_time)) for a in appointments]
    first_day = window_start.astimezone(zone).date()
    last_day = window_end.astimezone(zone).date()
    skills = calendar.skill_ids
    out: list[AvailabilityWindow] = []

    for slot in slots:
        capacity = slot.capacity or 1
        day = first_day
        while day <= last_day:
            if weekday_index(day) == slot.day_of_week:
                slot_start = datetime.combine(day, slot.start_time, tzinfo=zone).astimezone(timezone.utc)
                slot_end = datetime.combine(day, slot.end_time, tzinfo=zone).astimezone(timezone.utc)
                cursor = slot_start
                while cursor + step <= slot_end:
                    candidate_end = cursor + step
                    if cursor >= window_start and candidate_end <= window_end:
                        taken = sum(1 for b_start, b_end in busy if overlaps(cursor, candidate_end, b_start, b_end))
                        if taken < capacity:
                            out.append(
                                AvailabilityWindow(
                                    calendar_id=calendar.id,
                                    provider_user_id=calendar.provider_user_id,
                                    tenant_id=calendar.tenant_id,
                                    slot_id=slot.id,
                                    start_utc=cursor,
                                    end_utc=candidate_end,
                                    timezone=calendar.timezone,
                                    capacity=capacity,
                                    available_capacity=capacity - taken,
                                    skills=list(skills),
                                )
                            )
                    cursor = candidate_end
            day += timedelta(days=1)
    return out


def search_availability(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    start: datetime,
    end: datetime,
    tz_name: str,
    skill_ids: Iterable[Any] | None = None,
    duration_minutes: int = 30,
    cache: JsonCache | None = None,
) -> list[AvailabilityWindow]:
    """Concrete bookable windows across the tenant's active calendars.

    Naive ``start``/``end`` are wall-clock values in ``tz_name``. Only
    calendars whose skill set covers every requested skill are searched.
    """
    if start is None or end is None:
        raise ValidationError("start and end are required")
    if not tz_name:
        raise ValidationError("timezone is required", field="timezone")
    if not is_valid_timezone(tz_name):
        raise ValidationError("Invalid timezone", field="timezone")
    window_start = _window_to_utc(start, tz_name)
    window_end = _window_to_utc(end, tz_name)
    if window_end <= window_start:
        raise ValidationError("end must be after start", field="end")
    if duration_minutes is None or int(duration_minutes) < settings.MIN_BOOKING_MINUTES:
        raise ValidationError(
            f"duration must be at least {settings.MIN_BOOKING_MINUTES} minutes", field="duration"
        )
    duration_minutes = int(duration_minutes)
    wanted = normalize_uuid_list(skill_ids, "skill_ids")

    store = cache or get_cache()
    cache_key = availability_cache_key(tenant_id, wanted, window_start, window_end, duration_minutes, tz_name)
    cached = store.get(cache_key)
    if cached is not None:
        logger.info("availability_cache_hit", tenant_id=str(tenant_id), results=len(cached))
        return [AvailabilityWindow.from_dict(row) for row in cached]

    calendars = list(
        db.execute(
            select(Calendar)
            .where(Calendar.tenant_id == tenant_id, Calendar.is_active.is_(True))
            .order_by(Calendar.created_at.asc())
        ).scalars()
    )
    wanted_set = set(wanted)
    matching = [c for c in calendars if wanted_set.issubset(set(c.skill_ids))]
    if not matching:
        return []

    calendar_ids = [c.id for c in matching]
    slots_by_calendar: dict[uuid.UUID, list[AvailabilitySlot]] = {}
    for slot in db.execute(
        select(AvailabilitySlot)
        .where(AvailabilitySlot.calendar_id.in_(calendar_ids))
        .order_by(AvailabilitySlot.day_of_week.asc(), AvailabilitySlot.start_time.asc())
    ).scalars():
        slots_by_calendar.setdefault(slot.calendar_id, []).append(slot)

    appointments_by_calendar: dict[uuid.UUID, list[Appointment]] = {}
    for appt in db.execute(
        select(Appointment).where(
            Appointment.calendar_id.in_(calendar_ids),
            Appointment.status.in_(BLOCKING_STATUSES),
            Appointment.start_time < _naive(window_end),
            Appointment.end_time > _naive(window_start),
        )
    ).scalars():
        appointments_by_calendar.setdefault(appt.calendar_id, []).append(appt)

    step = timedelta(minutes=duration_minutes)
    results: list[AvailabilityWindow] = []
    for calendar in matching:
        calendar_slots = slots_by_calendar.get(calendar.id) or []
        if not calendar_slots:
            continue
        results.extend(
            _tile_calendar(
                calendar,
                calendar_slots,
                appointments_by_calendar.get(calendar.id) or [],
                window_start,
                window_end,
                step,
            )
        )

    results.sort(key=lambda w: w.start_utc)
    store.set(cache_key, [w.to_dict() for w in results], settings.CACHE_TTL_AVAILABILITY)
    logger.info(
        "availability_search_completed",
        tenant_id=str(tenant_id),
        calendars=len(matching),
        results=len(results),
    )
    return results
