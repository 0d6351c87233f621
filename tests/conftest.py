from datetime import time

import pytest
from sqlalchemy.orm import sessionmaker

from slotwise import auth_api
from slotwise.core.cache import JsonCache, set_cache
from slotwise.db import Base, build_engine
from slotwise.models import AvailabilitySlot, Calendar, Tenant, User


@pytest.fixture(autouse=True)
def cache(tmp_path):
    store = JsonCache("disk", directory=str(tmp_path / "cache"))
    set_cache(store)
    for limiter in (auth_api.login_failures, auth_api.register_attempts, auth_api.refresh_attempts):
        limiter.reset()
    yield store
    set_cache(None)
    store.close()


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test_slotwise.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    row = Tenant(slug="north-clinic", name="North Clinic")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def make_user(db, tenant):
    counter = {"n": 0}

    def factory(role: str = "user", status: str = "active", tenant_row: Tenant | None = None) -> User:
        counter["n"] += 1
        owner = tenant_row or tenant
        user = User(
            tenant_id=owner.id,
            email=f"{role}{counter['n']}@{owner.slug}.test",
            password_hash="unusable",
            first_name=role.title(),
            last_name=str(counter["n"]),
            role=role,
            status=status,
        )
        db.add(user)
        db.commit()
        return user

    return factory


@pytest.fixture
def make_calendar(db, tenant, make_user):
    def factory(
        tz_name: str = "UTC",
        provider: User | None = None,
        skills=None,
        is_active: bool = True,
        tenant_row: Tenant | None = None,
    ) -> Calendar:
        owner = tenant_row or tenant
        provider_user = provider or make_user("provider", tenant_row=owner)
        calendar = Calendar(
            tenant_id=owner.id,
            provider_user_id=provider_user.id,
            service_type="consultation",
            timezone=tz_name,
            is_active=is_active,
        )
        calendar.skills = list(skills or [])
        db.add(calendar)
        db.commit()
        return calendar

    return factory


@pytest.fixture
def add_slot(db):
    def factory(calendar: Calendar, day_of_week: int, start: str, end: str, capacity: int = 1) -> AvailabilitySlot:
        slot = AvailabilitySlot(
            calendar_id=calendar.id,
            day_of_week=day_of_week,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            capacity=capacity,
        )
        db.add(slot)
        db.commit()
        return slot

    return factory
