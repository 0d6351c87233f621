from datetime import datetime

import pytest

from slotwise.appointments import AppointmentUpdate, create_appointment, update_appointment
from slotwise.errors import NotFoundError, ValidationError
from slotwise.metrics import dashboard_metrics
from slotwise.waitlist import (
    WaitlistUpdate,
    cancel_entry,
    create_entry,
    delete_entry,
    get_entry,
    list_entries,
    promote_entry,
    update_entry,
)


def test_create_entry_defaults(db, tenant, make_user):
    client = make_user("client")
    entry = create_entry(db, tenant.id, client_user_id=client.id)

    assert entry.status == "active"
    assert entry.priority == "medium"
    assert entry.auto_promote is False


def test_create_entry_validates_input(db, tenant, make_user):
    client = make_user("client")
    with pytest.raises(ValidationError):
        create_entry(db, tenant.id, client_user_id=client.id, priority="urgent")
    with pytest.raises(ValidationError):
        create_entry(
            db,
            tenant.id,
            client_user_id=client.id,
            requested_start=datetime(2026, 10, 19, 12, 0),
            requested_end=datetime(2026, 10, 19, 11, 0),
        )
    with pytest.raises(ValidationError):
        create_entry(db, tenant.id, client_user_id=client.id, provider_user_id=make_user("provider", status="disabled").id)


def test_promote_only_active_entries(db, tenant, make_user):
    entry = create_entry(db, tenant.id, client_user_id=make_user("client").id, priority="high")

    promoted = promote_entry(db, tenant.id, entry.id)
    assert promoted.status == "promoted"
    assert promoted.promoted_at is not None

    with pytest.raises(ValidationError):
        promote_entry(db, tenant.id, entry.id)


def test_cancel_appends_reason_and_is_idempotent(db, tenant, make_user):
    entry = create_entry(db, tenant.id, client_user_id=make_user("client").id, notes="Prefers mornings")

    cancelled = cancel_entry(db, tenant.id, entry.id, reason="Booked elsewhere")
    assert cancelled.status == "cancelled"
    assert cancelled.notes == "Prefers mornings\nCancelled: Booked elsewhere"

    again = cancel_entry(db, tenant.id, entry.id, reason="twice")
    assert again.notes == "Prefers mornings\nCancelled: Booked elsewhere"


def test_update_and_filter_entries(db, tenant, make_user):
    provider = make_user("provider")
    first = create_entry(db, tenant.id, client_user_id=make_user("client").id)
    second = create_entry(db, tenant.id, client_user_id=make_user("client").id, provider_user_id=provider.id)

    update_entry(db, tenant.id, first.id, WaitlistUpdate(priority="low", auto_promote=True))
    with pytest.raises(ValidationError):
        update_entry(db, tenant.id, first.id, WaitlistUpdate(status="archived"))

    assert [e.id for e in list_entries(db, tenant.id, priority="low")] == [first.id]
    assert [e.id for e in list_entries(db, tenant.id, provider_user_id=provider.id)] == [second.id]
    assert get_entry(db, tenant.id, first.id).auto_promote is True

    delete_entry(db, tenant.id, second.id)
    with pytest.raises(NotFoundError):
        get_entry(db, tenant.id, second.id)


def test_dashboard_metrics_counts(db, tenant, make_user, make_calendar):
    calendar = make_calendar()
    make_calendar(is_active=False)
    client = make_user("client")

    def book(hour):
        return create_appointment(
            db,
            tenant.id,
            calendar_id=calendar.id,
            client_user_id=client.id,
            start_time=datetime(2030, 1, 7, hour, 0),
            end_time=datetime(2030, 1, 7, hour + 1, 0),
        )

    confirmed = book(9)
    book(10)
    cancelled = book(11)
    update_appointment(db, tenant.id, confirmed.id, AppointmentUpdate(status="confirmed"))
    update_appointment(db, tenant.id, cancelled.id, AppointmentUpdate(status="cancelled"))
    entry = create_entry(db, tenant.id, client_user_id=client.id)
    promote_entry(db, tenant.id, entry.id)
    create_entry(db, tenant.id, client_user_id=client.id)

    metrics = dashboard_metrics(db, tenant.id)

    assert metrics["appointments"]["total"] == 2
    assert metrics["appointments"]["upcoming"] == 2
    assert metrics["appointments"]["pending"] == 1
    assert metrics["appointments"]["confirmed"] == 1
    assert metrics["appointments"]["cancelled"] == 1
    assert metrics["waitlist"] == {"active": 1, "promoted": 1, "cancelled": 0}
    assert metrics["utilization"]["percentage"] == 50
    assert metrics["utilization"]["active_calendars"] == 1
    assert metrics["utilization"]["total_calendars"] == 2
