from datetime import datetime, timedelta, timezone

import pytest

from slotwise.appointments import (
    AppointmentUpdate,
    cancel_appointment,
    create_appointment,
    delete_appointment,
    find_conflicting_appointments,
    get_appointment,
    list_appointments,
    update_appointment,
)
from slotwise.calendars import create_skill
from slotwise.errors import ConflictError, NotFoundError, ValidationError


def _book(db, tenant, calendar, client, start, minutes=60, **kwargs):
    return create_appointment(
        db,
        tenant.id,
        calendar_id=calendar.id,
        client_user_id=client.id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        **kwargs,
    )


def test_create_appointment_stores_naive_utc(db, tenant, make_calendar, make_user):
    calendar = make_calendar()
    client = make_user("client")
    start = datetime(2026, 10, 19, 9, 0, tzinfo=timezone(timedelta(hours=2)))

    appt = _book(db, tenant, calendar, client, start, notes="first visit")

    assert appt.status == "pending"
    assert appt.start_time == datetime(2026, 10, 19, 7, 0)
    assert appt.end_time == datetime(2026, 10, 19, 8, 0)
    assert appt.notes == "first visit"


def test_overlapping_booking_is_rejected_with_conflicts(db, tenant, make_calendar, make_user):
    calendar = make_calendar()
    client = make_user("client")
    first = _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0))

    with pytest.raises(ConflictError) as exc:
        _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 30))

    assert exc.value.status_code == 409
    assert [c["id"] for c in exc.value.conflicts] == [str(first.id)]


def test_adjacent_bookings_do_not_conflict(db, tenant, make_calendar, make_user):
    calendar = make_calendar()
    client = make_user("client")
    _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0))
    _book(db, tenant, calendar, client, datetime(2026, 10, 19, 10, 0))
    _book(db, tenant, calendar, client, datetime(2026, 10, 19, 8, 0))

    assert len(list_appointments(db, tenant.id, calendar.id)) == 3


def test_cancelled_booking_frees_the_window(db, tenant, make_calendar, make_user):
    calendar = make_calendar()
    client = make_user("client")
    first = _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0))
    cancel_appointment(db, tenant.id, first.id)

    second = _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0))
    assert second.status == "pending"


def test_same_window_on_another_calendar_is_fine(db, tenant, make_calendar, make_user):
    client = make_user("client")
    _book(db, tenant, make_calendar(), client, datetime(2026, 10, 19, 9, 0))
    _book(db, tenant, make_calendar(), client, datetime(2026, 10, 19, 9, 0))


def test_reschedule_excludes_itself_but_not_others(db, tenant, make_calendar, make_user):
    calendar = make_calendar()
    client = make_user("client")
    first = _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0))
    _book(db, tenant, calendar, client, datetime(2026, 10, 19, 11, 0))

    moved = update_appointment(
        db,
        tenant.id,
        first.id,
        AppointmentUpdate(start_time=datetime(2026, 10, 19, 9, 30), end_time=datetime(2026, 10, 19, 10, 30)),
    )
    assert moved.start_time == datetime(2026, 10, 19, 9, 30)

    with pytest.raises(ConflictError):
        update_appointment(db, tenant.id, first.id, AppointmentUpdate(end_time=datetime(2026, 10, 19, 11, 15)))

    unchanged = get_appointment(db, tenant.id, first.id)
    assert unchanged.end_time == datetime(2026, 10, 19, 10, 30)


def test_status_updates_are_validated(db, tenant, make_calendar, make_user):
    appt = _book(db, tenant, make_calendar(), make_user("client"), datetime(2026, 10, 19, 9, 0))

    confirmed = update_appointment(db, tenant.id, appt.id, AppointmentUpdate(status="confirmed"))
    assert confirmed.status == "confirmed"

    with pytest.raises(ValidationError):
        update_appointment(db, tenant.id, appt.id, AppointmentUpdate(status="rescheduled"))


@pytest.mark.parametrize("minutes", [0, -30, 10])
def test_invalid_ranges_are_rejected(db, tenant, make_calendar, make_user, minutes):
    with pytest.raises(ValidationError):
        _book(db, tenant, make_calendar(), make_user("client"), datetime(2026, 10, 19, 9, 0), minutes=minutes)


def test_inactive_client_cannot_book(db, tenant, make_calendar, make_user):
    with pytest.raises(ValidationError):
        _book(db, tenant, make_calendar(), make_user("client", status="disabled"), datetime(2026, 10, 19, 9, 0))


def test_required_skills_must_be_offered_by_calendar(db, tenant, make_calendar, make_user):
    offered = create_skill(db, tenant.id, "Massage")
    missing = create_skill(db, tenant.id, "Acupuncture")
    calendar = make_calendar(skills=[offered])
    client = make_user("client")

    appt = _book(db, tenant, calendar, client, datetime(2026, 10, 19, 9, 0), required_skills=[str(offered.id)])
    assert appt.required_skills == [str(offered.id)]

    with pytest.raises(ValidationError) as exc:
        _book(db, tenant, calendar, client, datetime(2026, 10, 19, 12, 0), required_skills=[missing.id])
    assert exc.value.details["missing_skills"] == [str(missing.id)]


def test_find_conflicts_batches_calendars(db, tenant, make_calendar, make_user):
    client = make_user("client")
    a, b, c = make_calendar(), make_calendar(), make_calendar()
    _book(db, tenant, a, client, datetime(2026, 10, 19, 9, 0))
    _book(db, tenant, b, client, datetime(2026, 10, 19, 9, 30))
    _book(db, tenant, c, client, datetime(2026, 10, 19, 12, 0))

    rows = find_conflicting_appointments(
        db, [a.id, b.id, c.id], datetime(2026, 10, 19, 9, 45), datetime(2026, 10, 19, 10, 15)
    )
    assert {r.calendar_id for r in rows} == {a.id, b.id}
    assert find_conflicting_appointments(db, [], datetime(2026, 10, 19), datetime(2026, 10, 20)) == []


def test_lookups_are_tenant_scoped(db, tenant, make_calendar, make_user):
    from slotwise.models import Tenant

    appt = _book(db, tenant, make_calendar(), make_user("client"), datetime(2026, 10, 19, 9, 0))
    other = Tenant(slug="south-clinic", name="South Clinic")
    db.add(other)
    db.commit()

    with pytest.raises(NotFoundError):
        get_appointment(db, other.id, appt.id)
    delete_appointment(db, tenant.id, appt.id)
    with pytest.raises(NotFoundError):
        get_appointment(db, tenant.id, appt.id)
