from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from slotwise import api, auth_api
from slotwise.config import settings
from slotwise.core.middleware import RequestContextMiddleware
from slotwise.db import Base, build_engine, get_db
from slotwise.errors import install_error_handlers


def make_client(tmp_path):
    db_path = tmp_path / "test_slotwise_api.db"
    engine = build_engine(f"sqlite:///{db_path}")
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)
    install_error_handlers(app)
    app.include_router(api.router)
    app.include_router(auth_api.router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def register(client, email, password="Secret123", slug="north-clinic"):
    res = client.post(
        "/api/v1/auth/register",
        json={"tenant_slug": slug, "tenant_name": "North Clinic", "email": email, "password": password},
    )
    assert res.status_code == 201, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def test_first_registrant_owns_tenant(tmp_path):
    client = make_client(tmp_path)
    owner = register(client, "owner@north.test")
    member = register(client, "client@north.test")

    me = client.get("/api/v1/auth/me", headers=owner).json()
    assert me["user"]["role"] == "admin"
    assert me["roles"] == ["admin"]
    assert "roles:assign" in me["permissions"]

    me = client.get("/api/v1/auth/me", headers=member).json()
    assert me["user"]["role"] == "user"
    assert me["roles"] == ["client"]
    assert "calendars:create" not in me["permissions"]


def test_register_and_login_errors(tmp_path):
    client = make_client(tmp_path)
    register(client, "owner@north.test")

    dup = client.post(
        "/api/v1/auth/register",
        json={"tenant_slug": "north-clinic", "email": "owner@north.test", "password": "Secret123"},
    )
    assert dup.status_code == 409

    weak = client.post(
        "/api/v1/auth/register",
        json={"tenant_slug": "north-clinic", "email": "weak@north.test", "password": "onlyletters"},
    )
    assert weak.status_code == 400
    assert weak.json()["kind"] == "validation"

    ok = client.post(
        "/api/v1/auth/login",
        json={"tenant_slug": "north-clinic", "email": "OWNER@north.test", "password": "Secret123"},
    )
    assert ok.status_code == 200
    assert ok.json()["token_type"] == "bearer"

    bad = client.post(
        "/api/v1/auth/login",
        json={"tenant_slug": "north-clinic", "email": "owner@north.test", "password": "Wrong1234"},
    )
    assert bad.status_code == 401
    assert bad.headers["WWW-Authenticate"] == "Bearer"


def test_requests_need_a_valid_token(tmp_path):
    client = make_client(tmp_path)

    res = client.get("/api/v1/calendars")
    assert res.status_code == 401
    assert res.json()["kind"] == "authentication"
    assert res.headers["X-Request-ID"]

    res = client.get("/api/v1/calendars", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_booking_flow(tmp_path):
    client = make_client(tmp_path)
    owner = register(client, "owner@north.test")
    member = register(client, "client@north.test")
    owner_id = client.get("/api/v1/auth/me", headers=owner).json()["user"]["id"]
    member_id = client.get("/api/v1/auth/me", headers=member).json()["user"]["id"]

    skill = client.post("/api/v1/skills", json={"name": "Massage"}, headers=owner)
    assert skill.status_code == 201
    skill_id = skill.json()["id"]

    denied = client.post("/api/v1/calendars", json={"provider_user_id": owner_id}, headers=member)
    assert denied.status_code == 403
    assert denied.json()["required"] == ["calendars:create"]

    calendar = client.post(
        "/api/v1/calendars",
        json={"provider_user_id": owner_id, "timezone": "America/New_York", "skill_ids": [skill_id]},
        headers=owner,
    )
    assert calendar.status_code == 201
    calendar_id = calendar.json()["id"]

    slot = client.post(
        f"/api/v1/availability/{calendar_id}/slots",
        json={"day_of_week": 1, "start_time": "09:00:00", "end_time": "12:00:00"},
        headers=owner,
    )
    assert slot.status_code == 201
    assert slot.json()["capacity"] == 1

    search = {
        "start": "2026-10-19T00:00:00",
        "end": "2026-10-20T00:00:00",
        "timezone": "America/New_York",
        "duration": 60,
        "skill_ids": [skill_id],
    }
    windows = client.post("/api/v1/availability/search", json=search, headers=member).json()
    assert [w["start"][:19] for w in windows] == [
        "2026-10-19T13:00:00",
        "2026-10-19T14:00:00",
        "2026-10-19T15:00:00",
    ]

    booking = {
        "calendar_id": calendar_id,
        "start_time": "2026-10-19T14:00:00Z",
        "end_time": "2026-10-19T15:00:00Z",
        "required_skills": [skill_id],
    }
    created = client.post("/api/v1/appointments", json=booking, headers=member)
    assert created.status_code == 201
    assert created.json()["status"] == "pending"
    assert created.json()["client_user_id"] == member_id

    clash = client.post("/api/v1/appointments", json=booking, headers=member)
    assert clash.status_code == 409
    assert clash.json()["kind"] == "conflict"
    assert [c["id"] for c in clash.json()["conflicts"]] == [created.json()["id"]]

    windows = client.post("/api/v1/availability/search", json=search, headers=member).json()
    assert [w["start"][:19] for w in windows] == ["2026-10-19T13:00:00", "2026-10-19T15:00:00"]

    cancelled = client.post(f"/api/v1/appointments/{created.json()['id']}/cancel", headers=member)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"


def test_timezone_lookup(tmp_path):
    client = make_client(tmp_path)
    owner = register(client, "owner@north.test")

    res = client.get("/api/v1/availability/timezones/Asia/Kolkata", headers=owner)
    assert res.status_code == 200
    assert res.json() == {"name": "Asia/Kolkata", "offset": "+05:30"}

    res = client.get("/api/v1/availability/timezones/Mars/Olympus", headers=owner)
    assert res.status_code == 400


def test_role_management_round_trip(tmp_path):
    client = make_client(tmp_path)
    owner = register(client, "owner@north.test")
    member = register(client, "client@north.test")
    member_id = client.get("/api/v1/auth/me", headers=member).json()["user"]["id"]

    perms = {p["name"]: p["id"] for p in client.get("/api/v1/rbac/permissions", headers=owner).json()}
    role = client.post(
        "/api/v1/rbac/roles",
        json={"name": "front-desk", "permission_ids": [perms["waitlist:read"]]},
        headers=owner,
    )
    assert role.status_code == 201
    role_id = role.json()["id"]

    assert client.get("/api/v1/waitlist", headers=member).status_code == 403

    assigned = client.post(f"/api/v1/rbac/users/{member_id}/roles", json={"role_id": role_id}, headers=owner)
    assert assigned.status_code == 201
    assert client.get("/api/v1/waitlist", headers=member).status_code == 200

    assert client.delete(f"/api/v1/rbac/roles/{role_id}", headers=owner).status_code == 204
    assert client.get("/api/v1/waitlist", headers=member).status_code == 403

    mine = client.get("/api/v1/rbac/me/permissions", headers=member).json()
    assert "waitlist:read" not in mine["permissions"]


def login(client, email, password="Secret123", slug="north-clinic"):
    return client.post("/api/v1/auth/login", json={"tenant_slug": slug, "email": email, "password": password})


def test_refresh_rotates_and_logout_revokes(tmp_path):
    client = make_client(tmp_path)
    register(client, "owner@north.test")
    tokens = login(client, "owner@north.test").json()
    assert tokens["refresh_token"]

    rotated = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    fresh = rotated.json()
    assert fresh["refresh_token"] != tokens["refresh_token"]
    headers = {"Authorization": f"Bearer {fresh['access_token']}"}
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 200

    reused = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reused.status_code == 401

    out = client.post("/api/v1/auth/logout", json={"refresh_token": fresh["refresh_token"]}, headers=headers)
    assert out.status_code == 200
    assert out.json() == {"ok": True}
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": fresh["refresh_token"]}).status_code == 401


def test_logout_needs_own_refresh_token(tmp_path):
    client = make_client(tmp_path)
    owner = register(client, "owner@north.test")
    other = login(client, "owner@north.test").json()
    member_tokens = client.post(
        "/api/v1/auth/register",
        json={"tenant_slug": "north-clinic", "email": "client@north.test", "password": "Secret123"},
    ).json()
    member = {"Authorization": f"Bearer {member_tokens['access_token']}"}

    res = client.post("/api/v1/auth/logout", json={"refresh_token": other["refresh_token"]}, headers=member)
    assert res.status_code == 401
    res = client.post("/api/v1/auth/logout", json={"refresh_token": other["refresh_token"]})
    assert res.status_code == 401
    res = client.post("/api/v1/auth/logout", json={"refresh_token": other["refresh_token"]}, headers=owner)
    assert res.status_code == 200


def test_failed_logins_are_rate_limited(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_LOGIN_RL_MAX", 2)
    client = make_client(tmp_path)
    register(client, "owner@north.test")
    register(client, "client@north.test")

    assert login(client, "owner@north.test", "Wrong1234").status_code == 401
    assert login(client, "owner@north.test", "Wrong1234").status_code == 401
    blocked = login(client, "owner@north.test")
    assert blocked.status_code == 429
    assert blocked.json()["kind"] == "rate_limited"
    assert blocked.headers["Retry-After"] == str(settings.AUTH_LOGIN_RL_WINDOW_SECONDS)

    assert login(client, "client@north.test").status_code == 200


def test_successful_login_clears_failures(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_LOGIN_RL_MAX", 2)
    client = make_client(tmp_path)
    register(client, "owner@north.test")

    assert login(client, "owner@north.test", "Wrong1234").status_code == 401
    assert login(client, "owner@north.test").status_code == 200
    assert login(client, "owner@north.test", "Wrong1234").status_code == 401
    assert login(client, "owner@north.test").status_code == 200


def test_register_and_refresh_are_rate_limited(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_REGISTER_RL_MAX", 1)
    monkeypatch.setattr(settings, "AUTH_REFRESH_RL_MAX", 1)
    client = make_client(tmp_path)
    register(client, "owner@north.test")

    res = client.post(
        "/api/v1/auth/register",
        json={"tenant_slug": "north-clinic", "email": "client@north.test", "password": "Secret123"},
    )
    assert res.status_code == 429

    tokens = login(client, "owner@north.test").json()
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 200
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 429
