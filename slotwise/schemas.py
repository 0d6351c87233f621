import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

TIME_PATTERN = r"^\d{2}:\d{2}:\d{2}$"


# Auth


class AuthRegisterIn(BaseModel):
    tenant_slug: str = Field(min_length=2, max_length=80)
    tenant_name: str | None = Field(default=None, max_length=120)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)


class AuthLoginIn(BaseModel):
    tenant_slug: str = Field(min_length=2, max_length=80)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class AuthRefreshIn(BaseModel):
    refresh_token: str = Field(min_length=20, max_length=300)


class AuthTokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    refresh_token: str
    expires_in: int


class AuthLogoutOut(BaseModel):
    ok: bool


class UserOut(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: str
    status: str


class AuthMeOut(BaseModel):
    user: UserOut
    roles: list[str]
    permissions: list[str]


# Skills and calendars


class SkillCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    category: str | None = Field(default=None, max_length=120)
    description: str | None = None


class SkillUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    category: str | None = Field(default=None, max_length=120)
    description: str | None = None


class SkillOut(BaseModel):
    id: uuid.UUID
    name: str
    category: str | None = None
    description: str | None = None


class CalendarCreate(BaseModel):
    provider_user_id: uuid.UUID
    service_type: str | None = Field(default=None, max_length=120)
    timezone: str = "UTC"
    is_active: bool = True
    color: str | None = Field(default=None, max_length=16)
    skill_ids: list[uuid.UUID] = Field(default_factory=list)


class CalendarUpdateIn(BaseModel):
    provider_user_id: uuid.UUID | None = None
    service_type: str | None = Field(default=None, max_length=120)
    timezone: str | None = None
    is_active: bool | None = None
    color: str | None = Field(default=None, max_length=16)
    skill_ids: list[uuid.UUID] | None = None


class CalendarOut(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    provider_user_id: uuid.UUID
    service_type: str | None = None
    timezone: str
    is_active: bool
    color: str | None = None
    skill_ids: list[uuid.UUID]


# Availability


class SlotCreate(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    capacity: int | None = Field(default=None, ge=1)
    metadata: dict | None = None


class SlotUpdateIn(BaseModel):
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    capacity: int | None = Field(default=None, ge=1)
    metadata: dict | None = None


class SlotOut(BaseModel):
    id: uuid.UUID
    calendar_id: uuid.UUID
    day_of_week: int
    start_time: str
    end_time: str
    capacity: int
    metadata: dict | None = None


class AvailabilitySearchIn(BaseModel):
    start: datetime
    end: datetime
    timezone: str = Field(min_length=1)
    duration: int = Field(default=30, ge=1)
    skill_ids: list[uuid.UUID] = Field(default_factory=list)


class AvailabilityWindowOut(BaseModel):
    calendar_id: uuid.UUID
    provider_user_id: uuid.UUID
    slot_id: uuid.UUID
    start: datetime
    end: datetime
    timezone: str
    capacity: int
    available_capacity: int
    skills: list[uuid.UUID]


class TimezoneOut(BaseModel):
    name: str
    offset: str


# Appointments


class AppointmentCreate(BaseModel):
    calendar_id: uuid.UUID
    client_user_id: uuid.UUID | None = None
    start_time: datetime
    end_time: datetime
    required_skills: list[uuid.UUID] = Field(default_factory=list)
    notes: str | None = None
    metadata: dict | None = None


class AppointmentUpdateIn(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: str | None = None
    notes: str | None = None
    metadata: dict | None = None


class AppointmentOut(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    calendar_id: uuid.UUID
    client_user_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    status: str
    required_skills: list[uuid.UUID]
    notes: str | None = None
    metadata: dict | None = None
    created_at: datetime


# Group appointments


class GroupProviderIn(BaseModel):
    user_id: uuid.UUID | None = None
    calendar_id: uuid.UUID | None = None


class GroupParticipantIn(BaseModel):
    user_id: uuid.UUID | None = None
    metadata: dict | None = None


class GroupAppointmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime
    end_time: datetime
    duration_minutes: int | None = Field(default=None, ge=15)
    max_participants: int | None = Field(default=None, ge=1)
    providers: list[GroupProviderIn] = Field(default_factory=list)
    participants: list[GroupParticipantIn] = Field(default_factory=list)
    metadata: dict | None = None


class GroupAppointmentUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int | None = None
    max_participants: int | None = None
    status: str | None = None
    metadata: dict | None = None
    providers: list[GroupProviderIn] | None = None
    participants: list[GroupParticipantIn] | None = None


class GroupResponseIn(BaseModel):
    status: str
    metadata: dict | None = None


class GroupProviderOut(BaseModel):
    user_id: uuid.UUID
    calendar_id: uuid.UUID | None = None
    status: str
    confirmed_at: datetime | None = None
    declined_at: datetime | None = None


class GroupParticipantOut(BaseModel):
    user_id: uuid.UUID
    status: str
    invited_at: datetime
    confirmed_at: datetime | None = None
    declined_at: datetime | None = None
    metadata: dict | None = None


class GroupAppointmentOut(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    max_participants: int
    status: str
    created_by: uuid.UUID
    metadata: dict | None = None
    providers: list[GroupProviderOut]
    participants: list[GroupParticipantOut]


# Waitlist


class WaitlistCreate(BaseModel):
    client_user_id: uuid.UUID
    provider_user_id: uuid.UUID | None = None
    priority: str = "medium"
    requested_start: datetime | None = None
    requested_end: datetime | None = None
    auto_promote: bool = False
    notes: str | None = None
    metadata: dict | None = None

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in {"low", "medium", "high"}:
            raise ValueError("priority must be one of low, medium, high")
        return normalized


class WaitlistUpdateIn(BaseModel):
    client_user_id: uuid.UUID | None = None
    provider_user_id: uuid.UUID | None = None
    priority: str | None = None
    status: str | None = None
    requested_start: datetime | None = None
    requested_end: datetime | None = None
    auto_promote: bool | None = None
    notes: str | None = None
    metadata: dict | None = None


class WaitlistCancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class WaitlistOut(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    client_user_id: uuid.UUID
    provider_user_id: uuid.UUID | None = None
    priority: str
    status: str
    requested_start: datetime | None = None
    requested_end: datetime | None = None
    auto_promote: bool
    notes: str | None = None
    metadata: dict | None = None
    promoted_at: datetime | None = None
    created_at: datetime


# RBAC


class PermissionOut(BaseModel):
    id: uuid.UUID
    name: str
    resource: str
    action: str
    description: str | None = None


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    permission_ids: list[uuid.UUID] = Field(default_factory=list)


class RoleUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    permission_ids: list[uuid.UUID] | None = None


class RoleOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None = None
    is_system: bool
    permissions: list[PermissionOut] = Field(default_factory=list)


class RoleAssignIn(BaseModel):
    role_id: uuid.UUID
    expires_at: datetime | None = None


class UserRoleOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None = None
    is_system: bool
    assigned_at: datetime
    assigned_by: uuid.UUID | None = None
    expires_at: datetime | None = None


class PermissionContextOut(BaseModel):
    roles: list[dict]
    role_ids: list[str]
    permissions: list[str]
    cached_at: str | None = None
    expires_at: str | None = None
