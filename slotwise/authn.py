import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.cache import get_cache
from .errors import AuthenticationError, ConflictError, ValidationError
from .models import AuthSession, Tenant, User, utc_now_naive

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

LEGACY_ROLES = ("admin", "provider", "support", "user")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class AuthIdentity:
    user_id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def validate_password_policy(password: str) -> None:
    raw = str(password or "")
    min_len = max(8, int(settings.AUTH_PASSWORD_MIN_LENGTH))
    if len(raw) < min_len:
        raise ValidationError(f"password must be at least {min_len} chars", field="password")
    if not re.search(r"[A-Za-z]", raw) or not re.search(r"[0-9]", raw):
        raise ValidationError("password must contain letters and digits", field="password")


def _token_exp(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=max(1, int(minutes)))


def create_access_token(*, identity: AuthIdentity) -> str:
    payload = {
        "sub": str(identity.user_id),
        "tid": str(identity.tenant_id),
        "email": identity.email,
        "role": identity.role,
        "iss": settings.AUTH_ISSUER,
        "aud": settings.AUTH_AUDIENCE,
        "exp": _token_exp(settings.AUTH_ACCESS_TOKEN_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


def decode_access_token(token: str) -> AuthIdentity | None:
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_SECRET_KEY,
            algorithms=[settings.AUTH_ALGORITHM],
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={"verify_aud": True, "verify_iss": True},
        )
    except JWTError:
        return None

    try:
        user_id = uuid.UUID(str(payload.get("sub") or ""))
        tenant_id = uuid.UUID(str(payload.get("tid") or ""))
    except ValueError:
        return None
    email = str(payload.get("email") or "").strip().lower()
    role = str(payload.get("role") or "").strip().lower()
    return AuthIdentity(user_id=user_id, tenant_id=tenant_id, email=email, role=role)


def extract_identity_from_authorization_header(authorization_header: str | None) -> AuthIdentity | None:
    raw = (authorization_header or "").strip()
    if not raw.lower().startswith("bearer "):
        return None
    token = raw[7:].strip()
    if not token:
        return None
    return decode_access_token(token)


def get_user_by_email(db: Session, tenant_id: uuid.UUID, email: str) -> User | None:
    return db.execute(
        select(User).where(
            User.tenant_id == tenant_id,
            User.email == email.strip().lower(),
        )
    ).scalar_one_or_none()


def create_user(
    db: Session,
    tenant: Tenant,
    email: str,
    password: str,
    role: str = "user",
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    normalized_email = (email or "").strip().lower()
    if not normalized_email or not _EMAIL_RE.match(normalized_email):
        raise ValidationError("a valid email is required", field="email")
    normalized_role = (role or "user").strip().lower()
    if normalized_role not in LEGACY_ROLES:
        raise ValidationError("Invalid role", field="role")
    validate_password_policy(password)

    if get_user_by_email(db, tenant.id, normalized_email):
        raise ConflictError("User already exists")

    row = User(
        tenant_id=tenant.id,
        email=normalized_email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=normalized_role,
        status="active",
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def authenticate_user(db: Session, tenant: Tenant, email: str, password: str) -> User | None:
    row = get_user_by_email(db, tenant.id, email)
    if not row or row.status != "active":
        return None
    if not verify_password(password, row.password_hash):
        return None
    row.last_login_at = utc_now_naive()
    db.commit()
    return row


def resolve_active_user(db: Session, identity: AuthIdentity | None) -> User:
    if identity is None:
        raise AuthenticationError("Invalid or missing bearer token")
    user = db.execute(
        select(User).where(User.id == identity.user_id, User.tenant_id == identity.tenant_id)
    ).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("Unknown user")
    if user.status != "active":
        raise AuthenticationError("User inactive")
    return user


def identity_for(user: User) -> AuthIdentity:
    return AuthIdentity(user_id=user.id, tenant_id=user.tenant_id, email=user.email, role=user.role)


# Refresh sessions


def _revoked_key(token_hash: str) -> str:
    return f"slotwise:auth:revoked:{token_hash}"


def create_refresh_session(db: Session, user: User) -> tuple[str, AuthSession]:
    """Issue an opaque refresh token. Only its sha256 digest is stored."""
    raw = secrets.token_urlsafe(48)
    row = AuthSession(
        tenant_id=user.tenant_id,
        user_id=user.id,
        refresh_token_hash=hash_token(raw),
        is_revoked=False,
        expires_at=utc_now_naive() + timedelta(days=max(1, int(settings.AUTH_REFRESH_TOKEN_DAYS))),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return raw, row


def get_refresh_session(db: Session, refresh_token: str) -> AuthSession | None:
    return db.execute(
        select(AuthSession).where(AuthSession.refresh_token_hash == hash_token(refresh_token or ""))
    ).scalar_one_or_none()


def is_refresh_token_revoked(db: Session, refresh_token: str) -> bool:
    token_hash = hash_token(refresh_token or "")
    cached = get_cache().get(_revoked_key(token_hash))
    if cached and cached.get("revoked"):
        return True
    row = get_refresh_session(db, refresh_token)
    return row is None or bool(row.is_revoked)


def revoke_refresh_session(db: Session, row: AuthSession) -> None:
    if not row.is_revoked:
        row.is_revoked = True
        row.revoked_at = utc_now_naive()
        db.commit()
    remaining = int((row.expires_at - utc_now_naive()).total_seconds())
    if remaining > 0:
        get_cache().set(_revoked_key(row.refresh_token_hash), {"revoked": True}, remaining)


def use_refresh_session(db: Session, refresh_token: str) -> AuthSession:
    if not refresh_token or is_refresh_token_revoked(db, refresh_token):
        raise AuthenticationError("Invalid refresh token")
    row = get_refresh_session(db, refresh_token)
    if row.expires_at <= utc_now_naive():
        revoke_refresh_session(db, row)
        raise AuthenticationError("Refresh token expired")
    return row


def rotate_refresh_session(db: Session, refresh_token: str) -> tuple[User, str]:
    """Swap a live refresh token for a new one. The presented token is revoked."""
    row = use_refresh_session(db, refresh_token)
    user = db.execute(
        select(User).where(User.id == row.user_id, User.tenant_id == row.tenant_id)
    ).scalar_one_or_none()
    if user is None or user.status != "active":
        raise AuthenticationError("User inactive")
    revoke_refresh_session(db, row)
    raw, _ = create_refresh_session(db, user)
    return user, raw
