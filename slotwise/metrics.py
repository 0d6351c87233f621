import uuid
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .core.timezones import to_utc_naive
from .models import Appointment, Calendar, WaitlistEntry, utc_now_naive


def _count_when(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def dashboard_metrics(
    db: Session,
    tenant_id: uuid.UUID,
    range_start: datetime | None = None,
    range_end: datetime | None = None,
) -> dict:
    start = to_utc_naive(range_start) if range_start else None
    end = to_utc_naive(range_end) if range_end else None
    now = utc_now_naive()

    appt_q = select(
        _count_when(Appointment.status != "cancelled"),
        _count_when(Appointment.status.in_(("pending", "confirmed")) & (Appointment.start_time >= now)),
        _count_when(Appointment.status == "completed"),
        _count_when(Appointment.status == "pending"),
        _count_when(Appointment.status.in_(("confirmed", "completed"))),
        _count_when(Appointment.status == "cancelled"),
    ).where(Appointment.tenant_id == tenant_id)
    if start is not None:
        appt_q = appt_q.where(Appointment.start_time >= start)
    if end is not None:
        appt_q = appt_q.where(Appointment.start_time <= end)
    total, upcoming, completed, pending, confirmed, cancelled = db.execute(appt_q).one()

    wait_q = select(
        _count_when(WaitlistEntry.status == "active"),
        _count_when(WaitlistEntry.status == "promoted"),
        _count_when(WaitlistEntry.status == "cancelled"),
    ).where(WaitlistEntry.tenant_id == tenant_id)
    if start is not None:
        wait_q = wait_q.where(WaitlistEntry.created_at >= start)
    if end is not None:
        wait_q = wait_q.where(WaitlistEntry.created_at <= end)
    active, promoted, wait_cancelled = db.execute(wait_q).one()

    active_calendars, total_calendars = db.execute(
        select(_count_when(Calendar.is_active.is_(True)), func.count(Calendar.id)).where(
            Calendar.tenant_id == tenant_id
        )
    ).one()

    total = int(total or 0)
    confirmed = int(confirmed or 0)
    utilization = round(confirmed / total * 100) if total > 0 else 0

    return {
        "generated_at": now.isoformat(),
        "range": {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        },
        "appointments": {
            "total": total,
            "upcoming": int(upcoming or 0),
            "completed": int(completed or 0),
            "pending": int(pending or 0),
            "confirmed": confirmed,
            "cancelled": int(cancelled or 0),
        },
        "waitlist": {
            "active": int(active or 0),
            "promoted": int(promoted or 0),
            "cancelled": int(wait_cancelled or 0),
        },
        "utilization": {
            "percentage": max(0, min(100, utilization)),
            "active_calendars": int(active_calendars or 0),
            "total_calendars": int(total_calendars or 0),
            "confirmed_appointments": confirmed,
        },
    }
