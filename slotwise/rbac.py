import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .availability import normalize_uuid_list
from .config import settings
from .core.cache import JsonCache, get_cache
from .core.fields import UNSET, dedupe_by, is_set
from .core.timezones import to_utc_naive
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import Permission, Role, RolePermission, User, UserRole, utc_now_naive
from .tenancy import get_tenant_user

logger = structlog.get_logger("slotwise.rbac")

CACHE_NAMESPACE = "slotwise:rbac"

PERMISSION_CATALOG: list[tuple[str, str]] = [
    ("appointments:create", "Book appointments"),
    ("appointments:read", "View appointments"),
    ("appointments:update", "Reschedule or change appointment status"),
    ("appointments:delete", "Cancel or delete appointments"),
    ("availability:create", "Create availability slots"),
    ("availability:read", "View and search availability"),
    ("availability:update", "Edit availability slots"),
    ("availability:delete", "Remove availability slots"),
    ("calendars:create", "Create calendars"),
    ("calendars:read", "View calendars"),
    ("calendars:update", "Edit calendars"),
    ("calendars:delete", "Delete calendars"),
    ("skills:create", "Create skills"),
    ("skills:read", "View skills"),
    ("skills:update", "Edit skills"),
    ("skills:delete", "Delete skills"),
    ("waitlist:create", "Add waitlist entries"),
    ("waitlist:read", "View the waitlist"),
    ("waitlist:manage", "Update, promote, cancel and delete waitlist entries"),
    ("groupAppointments:create", "Create group appointments"),
    ("groupAppointments:read", "View and respond to group appointments"),
    ("groupAppointments:update", "Edit group appointments"),
    ("groupAppointments:delete", "Cancel or delete group appointments"),
    ("roles:create", "Create roles"),
    ("roles:read", "View roles and permissions"),
    ("roles:update", "Edit roles"),
    ("roles:delete", "Delete roles"),
    ("roles:assign", "Assign and remove user roles"),
    ("metrics:read", "View dashboard metrics"),
]

SYSTEM_ROLES: dict[str, tuple[str, list[str]]] = {
    "admin": ("Full tenant administration", [name for name, _ in PERMISSION_CATALOG]),
    "provider": (
        "Service provider",
        [
            "appointments:create",
            "appointments:read",
            "appointments:update",
            "appointments:delete",
            "availability:read",
            "calendars:read",
            "skills:read",
            "waitlist:read",
            "groupAppointments:read",
        ],
    ),
    "client": (
        "Client booking appointments",
        [
            "appointments:create",
            "appointments:read",
            "availability:read",
            "calendars:read",
            "skills:read",
        ],
    ),
}


# Permission context and cache


@dataclass(frozen=True)
class PermissionCacheKey:
    tenant_id: uuid.UUID
    user_id: uuid.UUID

    def render(self) -> str:
        return f"{CACHE_NAMESPACE}:tenant:{self.tenant_id}:user:{self.user_id}"


@dataclass
class PermissionContext:
    roles: list[dict] = field(default_factory=list)
    role_ids: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    cached_at: str | None = None
    expires_at: str | None = None

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    def has_all(self, required: Iterable[str]) -> bool:
        granted = set(self.permissions)
        return all(p in granted for p in required)

    def has_any(self, required: Iterable[str]) -> bool:
        wanted = list(required)
        if not wanted:
            return True
        granted = set(self.permissions)
        return any(p in granted for p in wanted)

    def to_dict(self) -> dict:
        return {
            "roles": self.roles,
            "role_ids": self.role_ids,
            "permissions": self.permissions,
            "cached_at": self.cached_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "PermissionContext":
        return cls(
            roles=list(raw.get("roles") or []),
            role_ids=list(raw.get("role_ids") or []),
            permissions=list(raw.get("permissions") or []),
            cached_at=raw.get("cached_at"),
            expires_at=raw.get("expires_at"),
        )


def _active_assignment_filter(now: datetime):
    return or_(UserRole.expires_at.is_(None), UserRole.expires_at > now)


def _load_context(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID) -> PermissionContext:
    now = utc_now_naive()
    roles = list(
        db.execute(
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                Role.tenant_id == tenant_id,
                _active_assignment_filter(now),
            )
            .order_by(Role.is_system.desc(), Role.name.asc())
        ).scalars()
    )
    permissions = sorted(
        set(
            db.execute(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(UserRole, UserRole.role_id == RolePermission.role_id)
                .join(Role, Role.id == UserRole.role_id)
                .where(
                    UserRole.user_id == user_id,
                    Role.tenant_id == tenant_id,
                    _active_assignment_filter(now),
                )
            ).scalars()
        )
    )
    cached_at = datetime.now(timezone.utc)
    return PermissionContext(
        roles=[{"id": str(r.id), "name": r.name, "is_system": bool(r.is_system)} for r in roles],
        role_ids=[str(r.id) for r in roles],
        permissions=permissions,
        cached_at=cached_at.isoformat(),
        expires_at=(cached_at + timedelta(seconds=settings.RBAC_CACHE_TTL)).isoformat(),
    )


def get_user_permission_context(
    db: Session,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    cache: JsonCache | None = None,
) -> PermissionContext:
    key = PermissionCacheKey(tenant_id, user_id).render()
    store = cache or get_cache()
    if settings.RBAC_ENABLE_CACHING:
        cached = store.get(key)
        if cached is not None:
            return PermissionContext.from_dict(cached)

    context = _load_context(db, tenant_id, user_id)
    if settings.RBAC_ENABLE_CACHING:
        store.set(key, context.to_dict(), settings.RBAC_CACHE_TTL)
    return context


def user_has_permission(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, permission: str) -> bool:
    return get_user_permission_context(db, tenant_id, user_id).has(permission)


def user_has_all_permissions(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, required: list[str]) -> bool:
    if not required:
        return True
    return get_user_permission_context(db, tenant_id, user_id).has_all(required)


def user_has_any_permission(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, required: list[str]) -> bool:
    if not required:
        return True
    return get_user_permission_context(db, tenant_id, user_id).has_any(required)


def invalidate(tenant_id: uuid.UUID, user_id: uuid.UUID, cache: JsonCache | None = None) -> None:
    if not settings.RBAC_ENABLE_CACHING:
        return
    (cache or get_cache()).delete(PermissionCacheKey(tenant_id, user_id).render())
    logger.info("permission_cache_invalidated", tenant_id=str(tenant_id), user_id=str(user_id))


def role_holder_ids(db: Session, tenant_id: uuid.UUID, role_id: uuid.UUID) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(UserRole.user_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(Role.tenant_id == tenant_id, Role.id == role_id)
        ).scalars()
    )


def invalidate_for_role(
    tenant_id: uuid.UUID,
    holder_ids: Iterable[uuid.UUID],
    cache: JsonCache | None = None,
) -> int:
    """Drop cached contexts for users that held a role.

    Collect ``holder_ids`` with :func:`role_holder_ids` before mutating the
    role, otherwise users of a deleted role are missed.
    """
    count = 0
    for user_id in holder_ids:
        invalidate(tenant_id, user_id, cache=cache)
        count += 1
    return count


# Access policy


@dataclass(frozen=True)
class PermissionCheck:
    names: tuple[str, ...]
    mode: str = "all"

    def allows(self, context: PermissionContext) -> bool:
        if not self.names:
            return True
        if self.mode == "any":
            return context.has_any(self.names)
        return context.has_all(self.names)


@dataclass(frozen=True)
class LegacyRoleOverride:
    """Grants access by the user's legacy role string.

    Deprecated compatibility path, scheduled for removal in 2.0.
    """

    roles: tuple[str, ...]

    def allows(self, legacy_role: str | None) -> bool:
        return bool(legacy_role) and legacy_role in self.roles


@dataclass(frozen=True)
class AccessPolicy:
    check: PermissionCheck | None = None
    legacy: LegacyRoleOverride | None = None

    @property
    def required(self) -> list[str]:
        return list(self.check.names) if self.check else []

    @property
    def mode(self) -> str:
        return self.check.mode if self.check else "all"

    def evaluate(self, context: PermissionContext, legacy_role: str | None) -> bool:
        if self.check is not None and self.check.allows(context):
            return True
        if self.check is None and self.legacy is None:
            return True
        if self.legacy is not None and settings.LEGACY_ROLE_OVERRIDE_ENABLED and self.legacy.allows(legacy_role):
            logger.warning("legacy_role_override_used", role=legacy_role, required=self.required)
            return True
        return False


def policy(*names: str, mode: str = "all", legacy: Iterable[str] = ()) -> AccessPolicy:
    legacy_roles = tuple(legacy)
    return AccessPolicy(
        check=PermissionCheck(tuple(names), mode) if names else None,
        legacy=LegacyRoleOverride(legacy_roles) if legacy_roles else None,
    )


def enforce_policy(db: Session, user: User, access: AccessPolicy) -> PermissionContext:
    context = get_user_permission_context(db, user.tenant_id, user.id)
    if not access.evaluate(context, user.role):
        raise AuthorizationError(required=access.required, mode=access.mode)
    return context


# Roles and assignments


@dataclass
class RoleUpdate:
    name: Any = UNSET
    description: Any = UNSET
    permission_ids: Any = UNSET


def list_permissions(db: Session) -> list[Permission]:
    return list(db.execute(select(Permission).order_by(Permission.resource.asc(), Permission.action.asc())).scalars())


def _load_permissions(db: Session, permission_ids: list[Any]) -> list[Permission]:
    wanted = dedupe_by(normalize_uuid_list(permission_ids, "permission_ids"), key=lambda p: p)
    rows = {p.id: p for p in db.execute(select(Permission).where(Permission.id.in_(wanted))).scalars()} if wanted else {}
    if len(rows) != len(wanted):
        raise ValidationError("One or more permissions are invalid", field="permission_ids")
    return [rows[pid] for pid in wanted]


def get_role_by_name(db: Session, tenant_id: uuid.UUID, name: str) -> Role | None:
    return db.execute(select(Role).where(Role.tenant_id == tenant_id, Role.name == name)).scalar_one_or_none()


def list_roles(db: Session, tenant_id: uuid.UUID) -> list[Role]:
    return list(
        db.execute(
            select(Role).where(Role.tenant_id == tenant_id).order_by(Role.is_system.desc(), Role.name.asc())
        ).scalars()
    )


def get_role(db: Session, tenant_id: uuid.UUID, role_id: uuid.UUID) -> Role:
    role = db.execute(select(Role).where(Role.tenant_id == tenant_id, Role.id == role_id)).scalar_one_or_none()
    if role is None:
        raise NotFoundError("Role not found")
    return role


def _normalize_role_name(name: str | None) -> str:
    normalized = (name or "").strip()
    if not normalized:
        raise ValidationError("name is required", field="name")
    return normalized


def create_role(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    name: str,
    permission_ids: list[Any],
    description: str | None = None,
    created_by: uuid.UUID | None = None,
) -> Role:
    if not permission_ids:
        raise ValidationError("At least one permission is required", field="permission_ids")
    permissions = _load_permissions(db, permission_ids)
    normalized = _normalize_role_name(name)
    if get_role_by_name(db, tenant_id, normalized):
        raise ConflictError("Role name already exists")

    role = Role(tenant_id=tenant_id, name=normalized, description=description, is_system=False)
    role.permission_links = [RolePermission(permission_id=p.id, granted_by=created_by) for p in permissions]
    db.add(role)
    db.commit()
    db.refresh(role)
    logger.info("role_created", tenant_id=str(tenant_id), role_id=str(role.id), permissions=len(permissions))
    return role


def update_role(
    db: Session,
    tenant_id: uuid.UUID,
    role_id: uuid.UUID,
    changes: RoleUpdate,
    updated_by: uuid.UUID | None = None,
) -> Role:
    role = get_role(db, tenant_id, role_id)
    if role.is_system:
        raise ValidationError("System roles cannot be modified")

    holders = role_holder_ids(db, tenant_id, role.id)

    if is_set(changes.name):
        name = _normalize_role_name(changes.name)
        if name != role.name:
            if get_role_by_name(db, tenant_id, name):
                raise ConflictError("Role name already exists")
            role.name = name
    if is_set(changes.description):
        role.description = changes.description
    if is_set(changes.permission_ids) and changes.permission_ids is not None:
        wanted = _load_permissions(db, changes.permission_ids)
        wanted_ids = {p.id for p in wanted}
        current = {link.permission_id: link for link in role.permission_links}
        for pid, link in current.items():
            if pid not in wanted_ids:
                role.permission_links.remove(link)
        for permission in wanted:
            if permission.id not in current:
                role.permission_links.append(RolePermission(permission_id=permission.id, granted_by=updated_by))
    db.commit()
    db.refresh(role)
    invalidate_for_role(tenant_id, holders)
    return role


def delete_role(db: Session, tenant_id: uuid.UUID, role_id: uuid.UUID) -> None:
    role = db.execute(
        select(Role).where(Role.tenant_id == tenant_id, Role.id == role_id, Role.is_system.is_(False))
    ).scalar_one_or_none()
    if role is None:
        raise NotFoundError("Role not found or cannot be deleted")
    holders = role_holder_ids(db, tenant_id, role.id)
    db.delete(role)
    db.commit()
    invalidate_for_role(tenant_id, holders)
    logger.info("role_deleted", tenant_id=str(tenant_id), role_id=str(role_id), holders=len(holders))


def list_user_roles(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID) -> list[UserRole]:
    return list(
        db.execute(
            select(UserRole)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                Role.tenant_id == tenant_id,
                _active_assignment_filter(utc_now_naive()),
            )
            .order_by(Role.is_system.desc(), Role.name.asc())
        ).scalars()
    )


def assign_role(
    db: Session,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    role_id: uuid.UUID,
    assigned_by: uuid.UUID | None = None,
    expires_at: datetime | None = None,
) -> UserRole:
    role = get_role(db, tenant_id, role_id)
    if get_tenant_user(db, tenant_id, user_id) is None:
        raise ValidationError("User must belong to tenant", field="user_id")

    assignment = db.get(UserRole, (user_id, role.id))
    if assignment is None:
        assignment = UserRole(user_id=user_id, role_id=role.id)
        db.add(assignment)
    assignment.assigned_by = assigned_by
    assignment.assigned_at = utc_now_naive()
    assignment.expires_at = to_utc_naive(expires_at) if expires_at else None
    db.commit()
    db.refresh(assignment)
    invalidate(tenant_id, user_id)
    logger.info("role_assigned", tenant_id=str(tenant_id), user_id=str(user_id), role_id=str(role.id))
    return assignment


def remove_role(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, role_id: uuid.UUID) -> None:
    role = get_role(db, tenant_id, role_id)
    assignment = db.get(UserRole, (user_id, role.id))
    if assignment is not None:
        db.delete(assignment)
        db.commit()
    invalidate(tenant_id, user_id)
    logger.info("role_removed", tenant_id=str(tenant_id), user_id=str(user_id), role_id=str(role.id))


def assign_default_role(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID) -> UserRole | None:
    name = (settings.RBAC_DEFAULT_ROLE or "").strip()
    if not name:
        return None
    role = get_role_by_name(db, tenant_id, name)
    if role is None:
        return None
    return assign_role(db, tenant_id, user_id, role.id)


def bootstrap_rbac(db: Session, tenant_id: uuid.UUID) -> dict[str, Role]:
    """Seed the permission catalog and the tenant's system roles. Safe to re-run."""
    existing = {p.name: p for p in db.execute(select(Permission)).scalars()}
    for name, description in PERMISSION_CATALOG:
        if name not in existing:
            resource, action = name.split(":", 1)
            permission = Permission(name=name, resource=resource, action=action, description=description)
            db.add(permission)
            existing[name] = permission
    db.flush()

    roles: dict[str, Role] = {}
    for role_name, (description, permission_names) in SYSTEM_ROLES.items():
        role = get_role_by_name(db, tenant_id, role_name)
        if role is None:
            role = Role(tenant_id=tenant_id, name=role_name, description=description, is_system=True)
            db.add(role)
        linked = {link.permission_id for link in role.permission_links}
        for permission_name in permission_names:
            permission = existing[permission_name]
            if permission.id not in linked:
                role.permission_links.append(RolePermission(permission_id=permission.id))
        roles[role_name] = role
    db.commit()
    return roles
