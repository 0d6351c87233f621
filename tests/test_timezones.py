from datetime import datetime, timezone

import pytest

from slotwise.core.timezones import (
    convert_to_utc,
    describe_timezone,
    is_valid_timezone,
    list_timezones,
    to_timezone,
    to_utc_naive,
    utc_offset,
)


@pytest.mark.parametrize("name", ["UTC", "America/New_York", "Europe/Warsaw", "Asia/Kolkata", "Australia/Lord_Howe"])
def test_known_zones_are_valid(name):
    assert is_valid_timezone(name)


@pytest.mark.parametrize("name", ["Mars/Olympus", "", "   ", "Not A Zone", "../etc/passwd"])
def test_unknown_zones_are_rejected(name):
    assert not is_valid_timezone(name)


def test_every_listed_zone_is_valid():
    names = list_timezones()
    assert names == sorted(names)
    assert "Europe/Warsaw" in names
    assert all(is_valid_timezone(n) for n in names)


def test_round_trip_local_to_utc_and_back():
    local = datetime(2026, 7, 1, 9, 0)
    utc = convert_to_utc(local, "America/New_York")
    assert utc == datetime(2026, 7, 1, 13, 0, tzinfo=timezone.utc)
    back = to_timezone(utc, "America/New_York")
    assert back.replace(tzinfo=None) == local


def test_convert_to_utc_respects_winter_offset():
    utc = convert_to_utc(datetime(2026, 1, 15, 9, 0), "Europe/Warsaw")
    assert utc == datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)


def test_convert_to_utc_rejects_invalid_zone():
    with pytest.raises(ValueError):
        convert_to_utc(datetime(2026, 1, 15, 9, 0), "Mars/Olympus")


def test_to_utc_naive_strips_offset():
    aware = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
    assert to_utc_naive(aware) == datetime(2026, 3, 2, 10, 0)
    naive = datetime(2026, 3, 2, 10, 0)
    assert to_utc_naive(naive) is naive


def test_utc_offset_and_description():
    at = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert utc_offset("Asia/Kolkata", at) == "+05:30"
    assert utc_offset("America/New_York", at) == "-05:00"
    assert utc_offset("Mars/Olympus", at) is None
    assert describe_timezone("UTC") == {"name": "UTC", "offset": "+00:00"}
    assert describe_timezone("Mars/Olympus") is None
