from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones


def get_zone(name: str) -> ZoneInfo | None:
    raw = (name or "").strip()
    if not raw:
        return None
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def is_valid_timezone(name: str) -> bool:
    return get_zone(name) is not None


def list_timezones() -> list[str]:
    return sorted(available_timezones())


def _require_zone(name: str) -> ZoneInfo:
    zone = get_zone(name)
    if zone is None:
        raise ValueError(f"Invalid timezone: {name}")
    return zone


def to_timezone(instant: datetime, name: str) -> datetime:
    """Express an instant in the given zone. Naive input is read as UTC."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(_require_zone(name))


def convert_to_utc(local: datetime, name: str) -> datetime:
    """Interpret a wall-clock value in the given zone and return the aware UTC instant.

    Aware input keeps its own offset. Ambiguous or skipped wall times resolve
    with the zone's ``fold=0`` rule.
    """
    if local.tzinfo is None:
        local = local.replace(tzinfo=_require_zone(name))
    return local.astimezone(timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_offset(name: str, at: datetime | None = None) -> str | None:
    zone = get_zone(name)
    if zone is None:
        return None
    moment = (at or datetime.now(timezone.utc)).astimezone(zone)
    raw = moment.strftime("%z")
    return f"{raw[:3]}:{raw[3:]}"


def describe_timezone(name: str) -> dict | None:
    offset = utc_offset(name)
    if offset is None:
        return None
    return {"name": name.strip(), "offset": offset}
