import uuid
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .availability import invalidate_availability_cache, normalize_uuid_list
from .core.fields import UNSET, dedupe_by, is_set
from .core.timezones import is_valid_timezone
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Calendar, Skill
from .tenancy import require_active_user

logger = structlog.get_logger("slotwise.calendars")


# Skills


@dataclass
class SkillUpdate:
    name: Any = UNSET
    category: Any = UNSET
    description: Any = UNSET


def get_skill_by_name(db: Session, tenant_id: uuid.UUID, name: str) -> Skill | None:
    return db.execute(
        select(Skill).where(Skill.tenant_id == tenant_id, Skill.name == name.strip())
    ).scalar_one_or_none()


def create_skill(
    db: Session,
    tenant_id: uuid.UUID,
    name: str,
    category: str | None = None,
    description: str | None = None,
) -> Skill:
    normalized = (name or "").strip()
    if not normalized:
        raise ValidationError("name is required", field="name")
    if get_skill_by_name(db, tenant_id, normalized):
        raise ConflictError("Skill name already exists for tenant")
    skill = Skill(tenant_id=tenant_id, name=normalized, category=category, description=description)
    db.add(skill)
    db.commit()
    db.refresh(skill)
    return skill


def list_skills(
    db: Session,
    tenant_id: uuid.UUID,
    search: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Skill]:
    q = select(Skill).where(Skill.tenant_id == tenant_id)
    term = (search or "").strip().lower()
    if term:
        q = q.where(func.lower(Skill.name).like(f"%{term}%"))
    q = q.order_by(Skill.name.asc()).limit(max(1, min(int(limit), 500))).offset(max(0, int(offset)))
    return list(db.execute(q).scalars())


def get_skill(db: Session, tenant_id: uuid.UUID, skill_id: uuid.UUID) -> Skill:
    skill = db.execute(
        select(Skill).where(Skill.tenant_id == tenant_id, Skill.id == skill_id)
    ).scalar_one_or_none()
    if skill is None:
        raise NotFoundError("Skill not found")
    return skill


def update_skill(db: Session, tenant_id: uuid.UUID, skill_id: uuid.UUID, changes: SkillUpdate) -> Skill:
    skill = get_skill(db, tenant_id, skill_id)
    if is_set(changes.name):
        new_name = (changes.name or "").strip()
        if not new_name:
            raise ValidationError("name must not be empty", field="name")
        if new_name != skill.name and get_skill_by_name(db, tenant_id, new_name):
            raise ConflictError("Skill name already exists for tenant")
        skill.name = new_name
    if is_set(changes.category):
        skill.category = changes.category
    if is_set(changes.description):
        skill.description = changes.description
    db.commit()
    db.refresh(skill)
    return skill


def delete_skill(db: Session, tenant_id: uuid.UUID, skill_id: uuid.UUID) -> None:
    skill = get_skill(db, tenant_id, skill_id)
    db.delete(skill)
    db.commit()
    # Calendar skill sets shrink with the catalog.
    db.expire_all()
    invalidate_availability_cache(tenant_id)


def load_tenant_skills(db: Session, tenant_id: uuid.UUID, skill_ids: list[Any]) -> list[Skill]:
    wanted = dedupe_by(normalize_uuid_list(skill_ids, "skill_ids"), key=lambda s: s)
    if not wanted:
        return []
    rows = {
        s.id: s
        for s in db.execute(
            select(Skill).where(Skill.tenant_id == tenant_id, Skill.id.in_(wanted))
        ).scalars()
    }
    if len(rows) != len(wanted):
        raise ValidationError("One or more skills do not belong to tenant", field="skill_ids")
    return [rows[sid] for sid in wanted]


# Calendars


@dataclass
class CalendarUpdate:
    provider_user_id: Any = UNSET
    service_type: Any = UNSET
    timezone: Any = UNSET
    is_active: Any = UNSET
    color: Any = UNSET
    skill_ids: Any = UNSET


def _require_timezone(name: str | None) -> str:
    if not name or not is_valid_timezone(name):
        raise ValidationError("Invalid timezone", field="timezone")
    return name.strip()


def create_calendar(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    provider_user_id: uuid.UUID,
    timezone: str = "UTC",
    service_type: str | None = None,
    is_active: bool = True,
    color: str | None = None,
    skill_ids: list[Any] | None = None,
) -> Calendar:
    tz_name = _require_timezone(timezone)
    require_active_user(db, tenant_id, provider_user_id, "Provider")
    skills = load_tenant_skills(db, tenant_id, skill_ids or [])

    calendar = Calendar(
        tenant_id=tenant_id,
        provider_user_id=provider_user_id,
        service_type=service_type,
        timezone=tz_name,
        is_active=bool(is_active),
        color=color,
    )
    calendar.skills = skills
    db.add(calendar)
    db.commit()
    db.refresh(calendar)
    invalidate_availability_cache(tenant_id)
    logger.info("calendar_created", tenant_id=str(tenant_id), calendar_id=str(calendar.id))
    return calendar


def list_calendars(
    db: Session,
    tenant_id: uuid.UUID,
    is_active: bool | None = None,
    provider_user_id: uuid.UUID | None = None,
) -> list[Calendar]:
    q = select(Calendar).where(Calendar.tenant_id == tenant_id)
    if is_active is not None:
        q = q.where(Calendar.is_active.is_(bool(is_active)))
    if provider_user_id is not None:
        q = q.where(Calendar.provider_user_id == provider_user_id)
    return list(db.execute(q.order_by(Calendar.created_at.asc())).scalars())


def get_calendar(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID) -> Calendar:
    calendar = db.execute(
        select(Calendar).where(Calendar.tenant_id == tenant_id, Calendar.id == calendar_id)
    ).scalar_one_or_none()
    if calendar is None:
        raise NotFoundError("Calendar not found")
    return calendar


def update_calendar(
    db: Session,
    tenant_id: uuid.UUID,
    calendar_id: uuid.UUID,
    changes: CalendarUpdate,
) -> Calendar:
    calendar = get_calendar(db, tenant_id, calendar_id)

    if is_set(changes.timezone):
        calendar_tz = _require_timezone(changes.timezone)
    else:
        calendar_tz = calendar.timezone
    if is_set(changes.provider_user_id):
        require_active_user(db, tenant_id, changes.provider_user_id, "Provider")
    skills = load_tenant_skills(db, tenant_id, changes.skill_ids or []) if is_set(changes.skill_ids) else None

    calendar.timezone = calendar_tz
    if is_set(changes.provider_user_id):
        calendar.provider_user_id = changes.provider_user_id
    if is_set(changes.service_type):
        calendar.service_type = changes.service_type
    if is_set(changes.is_active):
        calendar.is_active = bool(changes.is_active)
    if is_set(changes.color):
        calendar.color = changes.color
    if skills is not None:
        calendar.skills = skills
    db.commit()
    db.refresh(calendar)
    invalidate_availability_cache(tenant_id)
    return calendar


def delete_calendar(db: Session, tenant_id: uuid.UUID, calendar_id: uuid.UUID) -> None:
    calendar = get_calendar(db, tenant_id, calendar_id)
    db.delete(calendar)
    db.commit()
    invalidate_availability_cache(tenant_id)
    logger.info("calendar_deleted", tenant_id=str(tenant_id), calendar_id=str(calendar_id))
