import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import Tenant, User


def get_tenant_by_slug(db: Session, slug: str) -> Tenant | None:
    return db.execute(select(Tenant).where(Tenant.slug == slug.strip().lower())).scalar_one_or_none()


def get_or_create_tenant(db: Session, slug: str, name: str | None = None) -> Tenant:
    normalized = slug.strip().lower()
    if not normalized:
        raise ValidationError("tenant slug is required")
    tenant = get_tenant_by_slug(db, normalized)
    if tenant:
        return tenant
    tenant = Tenant(slug=normalized, name=(name or normalized).strip())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def get_tenant_user(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID) -> User | None:
    return db.execute(
        select(User).where(User.tenant_id == tenant_id, User.id == user_id)
    ).scalar_one_or_none()


def require_active_user(db: Session, tenant_id: uuid.UUID, user_id: uuid.UUID, label: str = "User") -> User:
    user = get_tenant_user(db, tenant_id, user_id)
    if user is None:
        raise ValidationError(f"{label} does not belong to this tenant", field=label.lower())
    if user.status != "active":
        raise ValidationError(f"{label} is not active", field=label.lower())
    return user


def load_tenant_users(db: Session, tenant_id: uuid.UUID, user_ids: list[uuid.UUID]) -> dict[uuid.UUID, User]:
    if not user_ids:
        return {}
    rows = db.execute(
        select(User).where(User.tenant_id == tenant_id, User.id.in_(set(user_ids)))
    ).scalars()
    return {row.id: row for row in rows}
