from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .api import get_current_user
from .authn import (
    authenticate_user,
    create_access_token,
    create_refresh_session,
    create_user,
    get_refresh_session,
    identity_for,
    revoke_refresh_session,
    rotate_refresh_session,
    validate_password_policy,
)
from .config import settings
from .core.ratelimit import SlidingWindowLimiter
from .db import get_db
from .errors import AuthenticationError, RateLimitError
from .models import User
from .rbac import assign_default_role, assign_role, bootstrap_rbac, get_user_permission_context
from .schemas import AuthLoginIn, AuthLogoutOut, AuthMeOut, AuthRefreshIn, AuthRegisterIn, AuthTokenOut, UserOut
from .tenancy import get_or_create_tenant, get_tenant_by_slug

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
logger = structlog.get_logger("slotwise.auth")

login_failures = SlidingWindowLimiter("login")
register_attempts = SlidingWindowLimiter("register")
refresh_attempts = SlidingWindowLimiter("refresh")


def _client_ip_from_request(request: Optional[Request]) -> str:
    if request is None:
        return "unknown"
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first[:64]
    if request.client and request.client.host:
        return str(request.client.host)[:64]
    return "unknown"


def _login_key(tenant_slug: str, email: str, client_ip: str) -> str:
    return f"{tenant_slug.strip().lower()}|{email.strip().lower()}|{client_ip.strip().lower()}"


def _enforce(limiter: SlidingWindowLimiter, key: str, limit: int, window_seconds: int, message: str) -> None:
    if limiter.hit(key, limit, window_seconds):
        logger.warning("rate_limited", scope=limiter.scope)
        raise RateLimitError(message, retry_after=window_seconds)


def _to_user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        status=user.status,
    )


def _token_out(db: Session, user: User, refresh_token: str | None = None) -> AuthTokenOut:
    if refresh_token is None:
        refresh_token, _ = create_refresh_session(db, user)
    return AuthTokenOut(
        access_token=create_access_token(identity=identity_for(user)),
        refresh_token=refresh_token,
        expires_in=int(settings.AUTH_ACCESS_TOKEN_MINUTES) * 60,
    )


@router.post("/register", response_model=AuthTokenOut, status_code=status.HTTP_201_CREATED)
def register(payload: AuthRegisterIn, request: Request, db: Session = Depends(get_db)):
    _enforce(
        register_attempts,
        _client_ip_from_request(request),
        settings.AUTH_REGISTER_RL_MAX,
        settings.AUTH_REGISTER_RL_WINDOW_SECONDS,
        "Too many registration attempts",
    )
    validate_password_policy(payload.password)
    existing_tenant = get_tenant_by_slug(db, payload.tenant_slug)
    tenant = existing_tenant or get_or_create_tenant(db, payload.tenant_slug, payload.tenant_name)
    roles = bootstrap_rbac(db, tenant.id)

    # The first account of a new tenant owns it.
    is_owner = existing_tenant is None
    user = create_user(
        db,
        tenant,
        payload.email,
        payload.password,
        role="admin" if is_owner else "user",
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    if is_owner:
        assign_role(db, tenant.id, user.id, roles["admin"].id)
    else:
        assign_default_role(db, tenant.id, user.id)
    logger.info("user_registered", tenant_id=str(tenant.id), user_id=str(user.id), owner=is_owner)
    return _token_out(db, user)


@router.post("/login", response_model=AuthTokenOut)
def login(payload: AuthLoginIn, request: Request, db: Session = Depends(get_db)):
    key = _login_key(payload.tenant_slug, payload.email, _client_ip_from_request(request))
    window = settings.AUTH_LOGIN_RL_WINDOW_SECONDS
    if login_failures.is_limited(key, settings.AUTH_LOGIN_RL_MAX, window):
        raise RateLimitError("Too many failed login attempts", retry_after=window)

    tenant = get_tenant_by_slug(db, payload.tenant_slug)
    user = authenticate_user(db, tenant, payload.email, payload.password) if tenant else None
    if user is None:
        login_failures.record(key, window)
        logger.warning("login_failed", tenant_slug=payload.tenant_slug)
        raise AuthenticationError("Invalid email or password")
    login_failures.clear(key)
    return _token_out(db, user)


@router.post("/refresh", response_model=AuthTokenOut)
def refresh(payload: AuthRefreshIn, request: Request, db: Session = Depends(get_db)):
    _enforce(
        refresh_attempts,
        _client_ip_from_request(request),
        settings.AUTH_REFRESH_RL_MAX,
        settings.AUTH_REFRESH_RL_WINDOW_SECONDS,
        "Refresh token rate limit exceeded",
    )
    user, refresh_token = rotate_refresh_session(db, payload.refresh_token)
    return _token_out(db, user, refresh_token)


@router.post("/logout", response_model=AuthLogoutOut)
def logout(
    payload: AuthRefreshIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = get_refresh_session(db, payload.refresh_token)
    if session is None or session.user_id != user.id:
        raise AuthenticationError("Invalid refresh token")
    revoke_refresh_session(db, session)
    logger.info("user_logged_out", tenant_id=str(user.tenant_id), user_id=str(user.id))
    return AuthLogoutOut(ok=True)


@router.get("/me", response_model=AuthMeOut)
def me(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    context = get_user_permission_context(db, user.tenant_id, user.id)
    return AuthMeOut(
        user=_to_user_out(user),
        roles=[r["name"] for r in context.roles],
        permissions=context.permissions,
    )
