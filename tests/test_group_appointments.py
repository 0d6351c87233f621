from datetime import datetime

import pytest
from sqlalchemy import func, select

from slotwise import group_appointments
from slotwise.appointments import create_appointment
from slotwise.errors import ConflictError, NotFoundError, ValidationError
from slotwise.group_appointments import (
    GroupAppointmentUpdate,
    ParticipantInput,
    ProviderInput,
    cancel_group_appointment,
    create_group_appointment,
    delete_group_appointment,
    get_group_appointment,
    list_group_appointments,
    respond_as_participant,
    respond_as_provider,
    update_group_appointment,
)
from slotwise.models import GroupAppointment, GroupAppointmentParticipant, GroupAppointmentProvider

START = datetime(2026, 10, 19, 15, 0)
END = datetime(2026, 10, 19, 16, 30)


def _create(db, tenant, creator, providers, participants=None, **kwargs):
    return create_group_appointment(
        db,
        tenant.id,
        name="Prenatal yoga",
        start_time=kwargs.pop("start_time", START),
        end_time=kwargs.pop("end_time", END),
        created_by=creator.id,
        providers=providers,
        participants=participants,
        **kwargs,
    )


def test_create_group_with_providers_and_participants(db, tenant, make_user, make_calendar):
    admin = make_user("admin")
    lead = make_user("provider")
    calendar = make_calendar(provider=lead)
    guests = [make_user("client") for _ in range(3)]

    group = _create(
        db,
        tenant,
        admin,
        [ProviderInput(lead.id, calendar.id)],
        [ParticipantInput(g.id, {"mat": i}) for i, g in enumerate(guests)],
    )

    assert group.status == "scheduled"
    assert group.duration_minutes == 90
    assert group.max_participants == 3
    assert [p.provider_user_id for p in group.providers] == [lead.id]
    assert group.providers[0].status == "pending"
    assert [p.participant_user_id for p in group.participants] == [g.id for g in guests]
    assert [p.position for p in group.participants] == [0, 1, 2]
    assert group.participants[2].metadata_json == {"mat": 2}


def test_members_are_deduplicated_in_order(db, tenant, make_user):
    admin = make_user("admin")
    a, b = make_user("provider"), make_user("provider")
    guest = make_user("client")

    group = _create(
        db,
        tenant,
        admin,
        [ProviderInput(b.id), ProviderInput(None), ProviderInput(a.id), ProviderInput(b.id)],
        [ParticipantInput(guest.id, {"first": True}), ParticipantInput(guest.id, {"first": False})],
    )

    assert [p.provider_user_id for p in group.providers] == [b.id, a.id]
    assert len(group.participants) == 1
    assert group.participants[0].metadata_json == {"first": True}


def test_provider_required(db, tenant, make_user):
    admin = make_user("admin")
    with pytest.raises(ValidationError):
        _create(db, tenant, admin, [])
    with pytest.raises(ValidationError):
        _create(db, tenant, admin, [ProviderInput(None)])


def test_max_participants_bounds(db, tenant, make_user):
    admin = make_user("admin")
    lead = make_user("provider")
    guests = [ParticipantInput(make_user("client").id) for _ in range(3)]

    with pytest.raises(ValidationError):
        _create(db, tenant, admin, [ProviderInput(lead.id)], guests, max_participants=2)
    with pytest.raises(ValidationError):
        _create(db, tenant, admin, [ProviderInput(lead.id)], [], max_participants=0)

    group = _create(db, tenant, admin, [ProviderInput(lead.id)], guests, max_participants=10)
    assert group.max_participants == 10


def test_explicit_duration_respects_minimum(db, tenant, make_user):
    admin = make_user("admin")
    lead = make_user("provider")

    with pytest.raises(ValidationError) as exc:
        _create(db, tenant, admin, [ProviderInput(lead.id)], duration_minutes=5)
    assert exc.value.details["field"] == "duration_minutes"
    assert db.scalar(select(func.count(GroupAppointment.id))) == 0

    group = _create(db, tenant, admin, [ProviderInput(lead.id)], duration_minutes=15)
    assert group.duration_minutes == 15
    updated = update_group_appointment(db, tenant.id, group.id, GroupAppointmentUpdate(duration_minutes=15))
    assert updated.duration_minutes == 15


def test_members_must_be_active_tenant_users(db, tenant, make_user):
    admin = make_user("admin")
    lead = make_user("provider")
    suspended = make_user("client", status="suspended")

    with pytest.raises(ValidationError):
        _create(db, tenant, admin, [ProviderInput(lead.id)], [ParticipantInput(suspended.id)])
    assert db.scalar(select(func.count(GroupAppointment.id))) == 0


def test_provider_calendar_must_be_free_and_owned(db, tenant, make_user, make_calendar):
    admin = make_user("admin")
    free_lead = make_user("provider")
    lead = make_user("provider")
    other = make_user("provider")
    free_calendar = make_calendar(provider=free_lead)
    calendar = make_calendar(provider=lead)
    create_appointment(
        db,
        tenant.id,
        calendar_id=calendar.id,
        client_user_id=make_user("client").id,
        start_time=datetime(2026, 10, 19, 16, 0),
        end_time=datetime(2026, 10, 19, 17, 0),
    )

    with pytest.raises(ConflictError) as exc:
        _create(
            db,
            tenant,
            admin,
            [ProviderInput(free_lead.id, free_calendar.id), ProviderInput(lead.id, calendar.id)],
            [ParticipantInput(make_user("client").id)],
        )
    assert [c["calendar_id"] for c in exc.value.conflicts] == [str(calendar.id)]
    assert db.scalar(select(func.count(GroupAppointment.id))) == 0
    assert db.scalar(select(func.count(GroupAppointmentProvider.id))) == 0
    assert db.scalar(select(func.count(GroupAppointmentParticipant.id))) == 0

    with pytest.raises(ValidationError):
        _create(
            db,
            tenant,
            admin,
            [ProviderInput(other.id, calendar.id)],
            start_time=datetime(2026, 10, 20, 9, 0),
            end_time=datetime(2026, 10, 20, 10, 0),
        )


def test_failed_member_insert_rolls_back_everything(db, tenant, make_user, monkeypatch):
    admin = make_user("admin")
    lead = make_user("provider")
    guest = make_user("client")

    def broken_participant(**kwargs):
        raise RuntimeError("participant insert failed")

    monkeypatch.setattr(group_appointments, "GroupAppointmentParticipant", broken_participant)

    with pytest.raises(RuntimeError):
        _create(db, tenant, admin, [ProviderInput(lead.id)], [ParticipantInput(guest.id)])

    assert db.scalar(select(func.count(GroupAppointment.id))) == 0
    assert db.scalar(select(func.count(GroupAppointmentProvider.id))) == 0
    assert db.scalar(select(func.count(GroupAppointmentParticipant.id))) == 0


def test_update_replaces_members_and_keeps_existing_state(db, tenant, make_user):
    admin = make_user("admin")
    a, b = make_user("provider"), make_user("provider")
    g1, g2 = make_user("client"), make_user("client")
    group = _create(db, tenant, admin, [ProviderInput(a.id)], [ParticipantInput(g1.id)])
    respond_as_provider(db, tenant.id, group.id, a.id, "confirmed")

    updated = update_group_appointment(
        db,
        tenant.id,
        group.id,
        GroupAppointmentUpdate(
            name="Evening yoga",
            providers=[ProviderInput(b.id), ProviderInput(a.id)],
            participants=[ParticipantInput(g2.id), ParticipantInput(g1.id)],
            max_participants=4,
        ),
    )

    assert updated.name == "Evening yoga"
    assert [(p.provider_user_id, p.status) for p in updated.providers] == [(b.id, "pending"), (a.id, "confirmed")]
    assert [p.participant_user_id for p in updated.participants] == [g2.id, g1.id]
    assert updated.max_participants == 4


def test_update_rejects_shrinking_below_participants(db, tenant, make_user):
    admin = make_user("admin")
    lead = make_user("provider")
    guests = [ParticipantInput(make_user("client").id) for _ in range(2)]
    group = _create(db, tenant, admin, [ProviderInput(lead.id)], guests)

    with pytest.raises(ValidationError):
        update_group_appointment(db, tenant.id, group.id, GroupAppointmentUpdate(max_participants=1))
    with pytest.raises(ValidationError):
        update_group_appointment(db, tenant.id, group.id, GroupAppointmentUpdate(status="postponed"))


def test_reschedule_checks_existing_provider_calendars(db, tenant, make_user, make_calendar):
    admin = make_user("admin")
    lead = make_user("provider")
    calendar = make_calendar(provider=lead)
    group = _create(db, tenant, admin, [ProviderInput(lead.id, calendar.id)])
    create_appointment(
        db,
        tenant.id,
        calendar_id=calendar.id,
        client_user_id=make_user("client").id,
        start_time=datetime(2026, 10, 20, 9, 0),
        end_time=datetime(2026, 10, 20, 10, 0),
    )

    with pytest.raises(ConflictError):
        update_group_appointment(
            db,
            tenant.id,
            group.id,
            GroupAppointmentUpdate(start_time=datetime(2026, 10, 20, 9, 30), end_time=datetime(2026, 10, 20, 11, 0)),
        )
    assert get_group_appointment(db, tenant.id, group.id).start_time == START


def test_rename_with_same_providers_skips_conflict_check(db, tenant, make_user, make_calendar):
    admin = make_user("admin")
    lead = make_user("provider")
    extra = make_user("provider")
    calendar = make_calendar(provider=lead)
    extra_calendar = make_calendar(provider=extra)
    group = _create(db, tenant, admin, [ProviderInput(lead.id, calendar.id)])
    for cal in (calendar, extra_calendar):
        create_appointment(
            db,
            tenant.id,
            calendar_id=cal.id,
            client_user_id=make_user("client").id,
            start_time=START,
            end_time=datetime(2026, 10, 19, 16, 0),
        )

    renamed = update_group_appointment(
        db,
        tenant.id,
        group.id,
        GroupAppointmentUpdate(name="Renamed", providers=[ProviderInput(lead.id, calendar.id)]),
    )
    assert renamed.name == "Renamed"
    assert [p.calendar_id for p in renamed.providers] == [calendar.id]

    with pytest.raises(ConflictError) as exc:
        update_group_appointment(
            db,
            tenant.id,
            group.id,
            GroupAppointmentUpdate(
                providers=[ProviderInput(lead.id, calendar.id), ProviderInput(extra.id, extra_calendar.id)]
            ),
        )
    assert [c["calendar_id"] for c in exc.value.conflicts] == [str(extra_calendar.id)]

    with pytest.raises(ValidationError):
        update_group_appointment(
            db,
            tenant.id,
            group.id,
            GroupAppointmentUpdate(providers=[ProviderInput(extra.id, calendar.id)]),
        )


def test_responses_record_timestamps(db, tenant, make_user):
    admin = make_user("admin")
    lead = make_user("provider")
    guest = make_user("client")
    outsider = make_user("client")
    group = _create(db, tenant, admin, [ProviderInput(lead.id)], [ParticipantInput(guest.id)])

    group = respond_as_provider(db, tenant.id, group.id, lead.id, "declined")
    assert group.providers[0].status == "declined"
    assert group.providers[0].declined_at is not None

    group = respond_as_participant(db, tenant.id, group.id, guest.id, "confirmed", metadata={"diet": "vegan"})
    assert group.participants[0].status == "confirmed"
    assert group.participants[0].confirmed_at is not None
    assert group.participants[0].metadata_json == {"diet": "vegan"}

    with pytest.raises(ValidationError):
        respond_as_provider(db, tenant.id, group.id, lead.id, "maybe")
    with pytest.raises(NotFoundError):
        respond_as_participant(db, tenant.id, group.id, outsider.id, "confirmed")


def test_listing_cancel_and_delete(db, tenant, make_user):
    admin = make_user("admin")
    a, b = make_user("provider"), make_user("provider")
    guest = make_user("client")
    first = _create(db, tenant, admin, [ProviderInput(a.id)], [ParticipantInput(guest.id)])
    second = _create(
        db,
        tenant,
        admin,
        [ProviderInput(b.id)],
        start_time=datetime(2026, 10, 21, 9, 0),
        end_time=datetime(2026, 10, 21, 10, 0),
    )

    assert [g.id for g in list_group_appointments(db, tenant.id)] == [first.id, second.id]
    assert [g.id for g in list_group_appointments(db, tenant.id, provider_user_id=b.id)] == [second.id]
    assert [g.id for g in list_group_appointments(db, tenant.id, participant_user_id=guest.id)] == [first.id]

    cancelled = cancel_group_appointment(db, tenant.id, second.id)
    assert cancelled.status == "cancelled"
    assert [g.id for g in list_group_appointments(db, tenant.id, status="cancelled")] == [second.id]

    delete_group_appointment(db, tenant.id, first.id)
    assert db.scalar(select(func.count(GroupAppointmentParticipant.id))) == 0
    with pytest.raises(NotFoundError):
        get_group_appointment(db, tenant.id, first.id)
