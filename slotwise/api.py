import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.orm import Session

from . import appointments as appointment_service
from . import availability as availability_service
from . import calendars as calendar_service
from . import group_appointments as group_service
from . import rbac
from . import waitlist as waitlist_service
from .authn import extract_identity_from_authorization_header, resolve_active_user
from .core.timezones import describe_timezone
from .db import get_db
from .errors import ValidationError
from .metrics import dashboard_metrics
from .models import (
    Appointment,
    AvailabilitySlot,
    Calendar,
    GroupAppointment,
    Permission,
    Role,
    Skill,
    User,
    UserRole,
    WaitlistEntry,
)
from .rbac import AccessPolicy, policy
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentUpdateIn,
    AvailabilitySearchIn,
    AvailabilityWindowOut,
    CalendarCreate,
    CalendarOut,
    CalendarUpdateIn,
    GroupAppointmentCreate,
    GroupAppointmentOut,
    GroupAppointmentUpdateIn,
    GroupParticipantOut,
    GroupProviderOut,
    GroupResponseIn,
    PermissionContextOut,
    PermissionOut,
    RoleAssignIn,
    RoleCreate,
    RoleOut,
    RoleUpdateIn,
    SkillCreate,
    SkillOut,
    SkillUpdateIn,
    SlotCreate,
    SlotOut,
    SlotUpdateIn,
    TimezoneOut,
    UserRoleOut,
    WaitlistCancelIn,
    WaitlistCreate,
    WaitlistOut,
    WaitlistUpdateIn,
)

router = APIRouter(prefix="/api/v1")


# Access


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    identity = extract_identity_from_authorization_header(authorization)
    return resolve_active_user(db, identity)


def require(access: AccessPolicy):
    def dependency(
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> User:
        rbac.enforce_policy(db, user, access)
        return user

    return dependency


# Route policies: RBAC permission plus the deprecated legacy-role override.
ADMIN = ("admin",)
STAFF = ("admin", "provider")
EVERYONE = ("admin", "provider", "user")
WAITLIST_READERS = ("admin", "provider", "support")
WAITLIST_WRITERS = ("admin", "support")


# Serializers


def _to_skill_out(s: Skill) -> SkillOut:
    return SkillOut(id=s.id, name=s.name, category=s.category, description=s.description)


def _to_calendar_out(c: Calendar) -> CalendarOut:
    return CalendarOut(
        id=c.id,
        tenant_id=c.tenant_id,
        provider_user_id=c.provider_user_id,
        service_type=c.service_type,
        timezone=c.timezone,
        is_active=bool(c.is_active),
        color=c.color,
        skill_ids=c.skill_ids,
    )


def _to_slot_out(s: AvailabilitySlot) -> SlotOut:
    return SlotOut(
        id=s.id,
        calendar_id=s.calendar_id,
        day_of_week=s.day_of_week,
        start_time=s.start_time.strftime("%H:%M:%S"),
        end_time=s.end_time.strftime("%H:%M:%S"),
        capacity=s.capacity,
        metadata=s.metadata_json,
    )


def _to_window_out(w: availability_service.AvailabilityWindow) -> AvailabilityWindowOut:
    return AvailabilityWindowOut(
        calendar_id=w.calendar_id,
        provider_user_id=w.provider_user_id,
        slot_id=w.slot_id,
        start=w.start_utc,
        end=w.end_utc,
        timezone=w.timezone,
        capacity=w.capacity,
        available_capacity=w.available_capacity,
        skills=w.skills,
    )


def _to_appointment_out(a: Appointment) -> AppointmentOut:
    return AppointmentOut(
        id=a.id,
        tenant_id=a.tenant_id,
        calendar_id=a.calendar_id,
        client_user_id=a.client_user_id,
        start_time=a.start_time,
        end_time=a.end_time,
        status=a.status,
        required_skills=[uuid.UUID(s) for s in a.required_skills or []],
        notes=a.notes,
        metadata=a.metadata_json,
        created_at=a.created_at,
    )


def _to_group_out(g: GroupAppointment) -> GroupAppointmentOut:
    return GroupAppointmentOut(
        id=g.id,
        tenant_id=g.tenant_id,
        name=g.name,
        description=g.description,
        start_time=g.start_time,
        end_time=g.end_time,
        duration_minutes=g.duration_minutes,
        max_participants=g.max_participants,
        status=g.status,
        created_by=g.created_by,
        metadata=g.metadata_json,
        providers=[
            GroupProviderOut(
                user_id=p.provider_user_id,
                calendar_id=p.calendar_id,
                status=p.status,
                confirmed_at=p.confirmed_at,
                declined_at=p.declined_at,
            )
            for p in g.providers
        ],
        participants=[
            GroupParticipantOut(
                user_id=p.participant_user_id,
                status=p.status,
                invited_at=p.invited_at,
                confirmed_at=p.confirmed_at,
                declined_at=p.declined_at,
                metadata=p.metadata_json,
            )
            for p in g.participants
        ],
    )


def _to_waitlist_out(e: WaitlistEntry) -> WaitlistOut:
    return WaitlistOut(
        id=e.id,
        tenant_id=e.tenant_id,
        client_user_id=e.client_user_id,
        provider_user_id=e.provider_user_id,
        priority=e.priority,
        status=e.status,
        requested_start=e.requested_start,
        requested_end=e.requested_end,
        auto_promote=bool(e.auto_promote),
        notes=e.notes,
        metadata=e.metadata_json,
        promoted_at=e.promoted_at,
        created_at=e.created_at,
    )


def _to_permission_out(p: Permission) -> PermissionOut:
    return PermissionOut(id=p.id, name=p.name, resource=p.resource, action=p.action, description=p.description)


def _to_role_out(r: Role) -> RoleOut:
    return RoleOut(
        id=r.id,
        name=r.name,
        description=r.description,
        is_system=bool(r.is_system),
        permissions=[_to_permission_out(p) for p in r.permissions],
    )


def _to_user_role_out(ur: UserRole) -> UserRoleOut:
    return UserRoleOut(
        id=ur.role.id,
        name=ur.role.name,
        description=ur.role.description,
        is_system=bool(ur.role.is_system),
        assigned_at=ur.assigned_at,
        assigned_by=ur.assigned_by,
        expires_at=ur.expires_at,
    )


# Skills


@router.get("/skills", response_model=List[SkillOut])
def list_skills(
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("skills:read", legacy=EVERYONE))),
):
    rows = calendar_service.list_skills(db, user.tenant_id, search=search, limit=limit, offset=offset)
    return [_to_skill_out(s) for s in rows]


@router.post("/skills", response_model=SkillOut, status_code=status.HTTP_201_CREATED)
def create_skill(
    payload: SkillCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("skills:create", legacy=ADMIN))),
):
    skill = calendar_service.create_skill(
        db, user.tenant_id, payload.name, category=payload.category, description=payload.description
    )
    return _to_skill_out(skill)


@router.put("/skills/{skill_id}", response_model=SkillOut)
def update_skill(
    skill_id: uuid.UUID,
    payload: SkillUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("skills:update", legacy=ADMIN))),
):
    changes = calendar_service.SkillUpdate(**payload.model_dump(exclude_unset=True))
    return _to_skill_out(calendar_service.update_skill(db, user.tenant_id, skill_id, changes))


@router.delete("/skills/{skill_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_skill(
    skill_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("skills:delete", legacy=ADMIN))),
):
    calendar_service.delete_skill(db, user.tenant_id, skill_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Calendars


@router.get("/calendars", response_model=List[CalendarOut])
def list_calendars(
    is_active: Optional[bool] = Query(default=None),
    provider_user_id: Optional[uuid.UUID] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("calendars:read", legacy=EVERYONE))),
):
    rows = calendar_service.list_calendars(db, user.tenant_id, is_active=is_active, provider_user_id=provider_user_id)
    return [_to_calendar_out(c) for c in rows]


@router.get("/calendars/{calendar_id}", response_model=CalendarOut)
def get_calendar(
    calendar_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("calendars:read", legacy=EVERYONE))),
):
    return _to_calendar_out(calendar_service.get_calendar(db, user.tenant_id, calendar_id))


@router.post("/calendars", response_model=CalendarOut, status_code=status.HTTP_201_CREATED)
def create_calendar(
    payload: CalendarCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("calendars:create", legacy=ADMIN))),
):
    calendar = calendar_service.create_calendar(db, user.tenant_id, **payload.model_dump())
    return _to_calendar_out(calendar)


@router.put("/calendars/{calendar_id}", response_model=CalendarOut)
def update_calendar(
    calendar_id: uuid.UUID,
    payload: CalendarUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("calendars:update", legacy=ADMIN))),
):
    changes = calendar_service.CalendarUpdate(**payload.model_dump(exclude_unset=True))
    return _to_calendar_out(calendar_service.update_calendar(db, user.tenant_id, calendar_id, changes))


@router.delete("/calendars/{calendar_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_calendar(
    calendar_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("calendars:delete", legacy=ADMIN))),
):
    calendar_service.delete_calendar(db, user.tenant_id, calendar_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Availability


@router.post("/availability/search", response_model=List[AvailabilityWindowOut])
def search_availability(
    payload: AvailabilitySearchIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("availability:read", legacy=EVERYONE))),
):
    rows = availability_service.search_availability(
        db,
        user.tenant_id,
        start=payload.start,
        end=payload.end,
        tz_name=payload.timezone,
        skill_ids=payload.skill_ids,
        duration_minutes=payload.duration,
    )
    return [_to_window_out(w) for w in rows]


@router.get("/availability/timezones/{name:path}", response_model=TimezoneOut)
def get_timezone(
    name: str,
    user: User = Depends(require(policy("availability:read", legacy=EVERYONE))),
):
    described = describe_timezone(name)
    if described is None:
        raise ValidationError("Invalid timezone", field="timezone")
    return TimezoneOut(**described)


@router.get("/availability/{calendar_id}/slots", response_model=List[SlotOut])
def list_slots(
    calendar_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("availability:read", legacy=STAFF))),
):
    return [_to_slot_out(s) for s in availability_service.list_slots(db, user.tenant_id, calendar_id)]


@router.post("/availability/{calendar_id}/slots", response_model=SlotOut, status_code=status.HTTP_201_CREATED)
def create_slot(
    calendar_id: uuid.UUID,
    payload: SlotCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("availability:create", legacy=ADMIN))),
):
    slot = availability_service.create_slot(
        db,
        user.tenant_id,
        calendar_id,
        day_of_week=payload.day_of_week,
        start_time=payload.start_time,
        end_time=payload.end_time,
        capacity=payload.capacity,
        metadata=payload.metadata,
    )
    return _to_slot_out(slot)


@router.put("/availability/{calendar_id}/slots/{slot_id}", response_model=SlotOut)
def update_slot(
    calendar_id: uuid.UUID,
    slot_id: uuid.UUID,
    payload: SlotUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("availability:update", legacy=ADMIN))),
):
    changes = availability_service.SlotUpdate(**payload.model_dump(exclude_unset=True))
    return _to_slot_out(availability_service.update_slot(db, user.tenant_id, calendar_id, slot_id, changes))


@router.delete("/availability/{calendar_id}/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    calendar_id: uuid.UUID,
    slot_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("availability:delete", legacy=ADMIN))),
):
    availability_service.delete_slot(db, user.tenant_id, calendar_id, slot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Appointments


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:create", legacy=EVERYONE))),
):
    appointment = appointment_service.create_appointment(
        db,
        user.tenant_id,
        calendar_id=payload.calendar_id,
        client_user_id=payload.client_user_id or user.id,
        start_time=payload.start_time,
        end_time=payload.end_time,
        required_skills=payload.required_skills,
        notes=payload.notes,
        metadata=payload.metadata,
    )
    return _to_appointment_out(appointment)


@router.get("/appointments", response_model=List[AppointmentOut])
def list_appointments(
    calendar_id: uuid.UUID = Query(...),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:read", legacy=EVERYONE))),
):
    rows = appointment_service.list_appointments(db, user.tenant_id, calendar_id, start=start, end=end)
    return [_to_appointment_out(a) for a in rows]


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:read", legacy=EVERYONE))),
):
    return _to_appointment_out(appointment_service.get_appointment(db, user.tenant_id, appointment_id))


@router.put("/appointments/{appointment_id}", response_model=AppointmentOut)
def update_appointment(
    appointment_id: uuid.UUID,
    payload: AppointmentUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:update", legacy=STAFF))),
):
    changes = appointment_service.AppointmentUpdate(**payload.model_dump(exclude_unset=True))
    return _to_appointment_out(appointment_service.update_appointment(db, user.tenant_id, appointment_id, changes))


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:delete", legacy=EVERYONE))),
):
    return _to_appointment_out(appointment_service.cancel_appointment(db, user.tenant_id, appointment_id))


@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("appointments:delete", legacy=STAFF))),
):
    appointment_service.delete_appointment(db, user.tenant_id, appointment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Group appointments


def _provider_inputs(items) -> list[group_service.ProviderInput]:
    return [group_service.ProviderInput(user_id=p.user_id, calendar_id=p.calendar_id) for p in items or []]


def _participant_inputs(items) -> list[group_service.ParticipantInput]:
    return [group_service.ParticipantInput(user_id=p.user_id, metadata=p.metadata) for p in items or []]


@router.get("/group-appointments", response_model=List[GroupAppointmentOut])
def list_group_appointments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    provider_user_id: Optional[uuid.UUID] = Query(default=None),
    participant_user_id: Optional[uuid.UUID] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:read", legacy=STAFF))),
):
    rows = group_service.list_group_appointments(
        db,
        user.tenant_id,
        status=status_filter,
        provider_user_id=provider_user_id,
        participant_user_id=participant_user_id,
    )
    return [_to_group_out(g) for g in rows]


@router.post("/group-appointments", response_model=GroupAppointmentOut, status_code=status.HTTP_201_CREATED)
def create_group_appointment(
    payload: GroupAppointmentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:create", legacy=ADMIN))),
):
    group = group_service.create_group_appointment(
        db,
        user.tenant_id,
        name=payload.name,
        description=payload.description,
        start_time=payload.start_time,
        end_time=payload.end_time,
        duration_minutes=payload.duration_minutes,
        max_participants=payload.max_participants,
        providers=_provider_inputs(payload.providers),
        participants=_participant_inputs(payload.participants),
        created_by=user.id,
        metadata=payload.metadata,
    )
    return _to_group_out(group)


@router.get("/group-appointments/{group_id}", response_model=GroupAppointmentOut)
def get_group_appointment(
    group_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:read", legacy=STAFF))),
):
    return _to_group_out(group_service.get_group_appointment(db, user.tenant_id, group_id))


@router.put("/group-appointments/{group_id}", response_model=GroupAppointmentOut)
def update_group_appointment(
    group_id: uuid.UUID,
    payload: GroupAppointmentUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:update", legacy=ADMIN))),
):
    raw = payload.model_dump(exclude_unset=True, exclude={"providers", "participants"})
    changes = group_service.GroupAppointmentUpdate(**raw)
    if "providers" in payload.model_fields_set:
        changes.providers = _provider_inputs(payload.providers)
    if "participants" in payload.model_fields_set:
        changes.participants = _participant_inputs(payload.participants)
    return _to_group_out(group_service.update_group_appointment(db, user.tenant_id, group_id, changes))


@router.post("/group-appointments/{group_id}/cancel", response_model=GroupAppointmentOut)
def cancel_group_appointment(
    group_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:delete", legacy=ADMIN))),
):
    return _to_group_out(group_service.cancel_group_appointment(db, user.tenant_id, group_id))


@router.post("/group-appointments/{group_id}/providers/respond", response_model=GroupAppointmentOut)
def respond_as_provider(
    group_id: uuid.UUID,
    payload: GroupResponseIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:read", legacy=STAFF))),
):
    group = group_service.respond_as_provider(db, user.tenant_id, group_id, user.id, payload.status)
    return _to_group_out(group)


@router.post("/group-appointments/{group_id}/participants/respond", response_model=GroupAppointmentOut)
def respond_as_participant(
    group_id: uuid.UUID,
    payload: GroupResponseIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:read", legacy=STAFF))),
):
    kwargs = {"metadata": payload.metadata} if "metadata" in payload.model_fields_set else {}
    group = group_service.respond_as_participant(db, user.tenant_id, group_id, user.id, payload.status, **kwargs)
    return _to_group_out(group)


@router.delete("/group-appointments/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_group_appointment(
    group_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("groupAppointments:delete", legacy=ADMIN))),
):
    group_service.delete_group_appointment(db, user.tenant_id, group_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Waitlist


@router.get("/waitlist", response_model=List[WaitlistOut])
def list_waitlist(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    provider_user_id: Optional[uuid.UUID] = Query(default=None),
    priority: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:read", legacy=WAITLIST_READERS))),
):
    rows = waitlist_service.list_entries(
        db, user.tenant_id, status=status_filter, provider_user_id=provider_user_id, priority=priority
    )
    return [_to_waitlist_out(e) for e in rows]


@router.post("/waitlist", response_model=WaitlistOut, status_code=status.HTTP_201_CREATED)
def create_waitlist_entry(
    payload: WaitlistCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:create", legacy=WAITLIST_WRITERS))),
):
    entry = waitlist_service.create_entry(db, user.tenant_id, **payload.model_dump())
    return _to_waitlist_out(entry)


@router.get("/waitlist/{entry_id}", response_model=WaitlistOut)
def get_waitlist_entry(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:read", legacy=WAITLIST_READERS))),
):
    return _to_waitlist_out(waitlist_service.get_entry(db, user.tenant_id, entry_id))


@router.patch("/waitlist/{entry_id}", response_model=WaitlistOut)
def update_waitlist_entry(
    entry_id: uuid.UUID,
    payload: WaitlistUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:manage", legacy=WAITLIST_WRITERS))),
):
    changes = waitlist_service.WaitlistUpdate(**payload.model_dump(exclude_unset=True))
    return _to_waitlist_out(waitlist_service.update_entry(db, user.tenant_id, entry_id, changes))


@router.post("/waitlist/{entry_id}/promote", response_model=WaitlistOut)
def promote_waitlist_entry(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:manage", legacy=WAITLIST_WRITERS))),
):
    return _to_waitlist_out(waitlist_service.promote_entry(db, user.tenant_id, entry_id))


@router.post("/waitlist/{entry_id}/cancel", response_model=WaitlistOut)
def cancel_waitlist_entry(
    entry_id: uuid.UUID,
    payload: Optional[WaitlistCancelIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:manage", legacy=WAITLIST_WRITERS))),
):
    reason = payload.reason if payload else None
    return _to_waitlist_out(waitlist_service.cancel_entry(db, user.tenant_id, entry_id, reason=reason))


@router.delete("/waitlist/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_waitlist_entry(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("waitlist:manage", legacy=WAITLIST_WRITERS))),
):
    waitlist_service.delete_entry(db, user.tenant_id, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# RBAC


@router.get("/rbac/me/permissions", response_model=PermissionContextOut)
def my_permissions(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    context = rbac.get_user_permission_context(db, user.tenant_id, user.id)
    return PermissionContextOut(**context.to_dict())


@router.get("/rbac/permissions", response_model=List[PermissionOut])
def list_permissions(
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:read", legacy=ADMIN))),
):
    return [_to_permission_out(p) for p in rbac.list_permissions(db)]


@router.get("/rbac/roles", response_model=List[RoleOut])
def list_roles(
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:read", legacy=ADMIN))),
):
    return [_to_role_out(r) for r in rbac.list_roles(db, user.tenant_id)]


@router.post("/rbac/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:create", legacy=ADMIN))),
):
    role = rbac.create_role(
        db,
        user.tenant_id,
        name=payload.name,
        description=payload.description,
        permission_ids=payload.permission_ids,
        created_by=user.id,
    )
    return _to_role_out(role)


@router.get("/rbac/roles/{role_id}", response_model=RoleOut)
def get_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:read", legacy=ADMIN))),
):
    return _to_role_out(rbac.get_role(db, user.tenant_id, role_id))


@router.put("/rbac/roles/{role_id}", response_model=RoleOut)
def update_role(
    role_id: uuid.UUID,
    payload: RoleUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:update", legacy=ADMIN))),
):
    changes = rbac.RoleUpdate(**payload.model_dump(exclude_unset=True))
    return _to_role_out(rbac.update_role(db, user.tenant_id, role_id, changes, updated_by=user.id))


@router.delete("/rbac/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:delete", legacy=ADMIN))),
):
    rbac.delete_role(db, user.tenant_id, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/rbac/users/{user_id}/roles", response_model=List[UserRoleOut])
def list_user_roles(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:read", legacy=ADMIN))),
):
    return [_to_user_role_out(ur) for ur in rbac.list_user_roles(db, user.tenant_id, user_id)]


@router.post("/rbac/users/{user_id}/roles", response_model=UserRoleOut, status_code=status.HTTP_201_CREATED)
def assign_role(
    user_id: uuid.UUID,
    payload: RoleAssignIn,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:assign", legacy=ADMIN))),
):
    assignment = rbac.assign_role(
        db,
        user.tenant_id,
        user_id,
        payload.role_id,
        assigned_by=user.id,
        expires_at=payload.expires_at,
    )
    return _to_user_role_out(assignment)


@router.delete("/rbac/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_role(
    user_id: uuid.UUID,
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("roles:assign", legacy=ADMIN))),
):
    rbac.remove_role(db, user.tenant_id, user_id, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Metrics


@router.get("/metrics/dashboard")
def get_dashboard_metrics(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require(policy("metrics:read"))),
):
    return dashboard_metrics(db, user.tenant_id, range_start=start, range_end=end)
