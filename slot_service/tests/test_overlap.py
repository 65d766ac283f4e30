import itertools
from datetime import date, datetime, timedelta, timezone

import pytest

from slot_service.app.overlap import Window, find_cross_overlap, find_self_overlap
from slot_service.app.utils import normalize_date, time_to_minutes


@pytest.mark.parametrize("value,expected", [
    ("00:00", 0),
    ("09:30", 570),
    ("23:59", 1439),
])
def test_time_to_minutes(value, expected):
    assert time_to_minutes(value) == expected


@pytest.mark.parametrize("value", ["24:00", "9:00", "09:60", "0900", "", None, "aa:bb"])
def test_time_to_minutes_rejects_bad_format(value):
    with pytest.raises(ValueError):
        time_to_minutes(value)


def test_normalize_date_uses_utc_calendar_day():
    assert normalize_date("2030-03-01") == date(2030, 3, 1)
    assert normalize_date(date(2030, 3, 1)) == date(2030, 3, 1)
    # 01:00 at UTC+05:00 is still the previous day in UTC
    assert normalize_date("2030-03-01T01:00:00+05:00") == date(2030, 2, 28)
    aware = datetime(2030, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
    assert normalize_date(aware) == date(2030, 3, 2)
    with pytest.raises(ValueError):
        normalize_date("not-a-date")


def test_touching_windows_do_not_overlap():
    first = Window("09:00", "10:00")
    second = Window("10:00", "11:00")
    assert not first.overlaps(second)
    assert not second.overlaps(first)
    assert find_self_overlap([first, second]) is None


def test_overlapping_windows_are_detected():
    first = Window("09:00", "10:00")
    second = Window("09:30", "10:30")
    assert first.overlaps(second)
    overlap = find_self_overlap([first, second])
    assert overlap is not None
    assert {overlap.candidate, overlap.existing} == {first, second}


def test_contained_window_overlaps():
    assert Window("09:00", "12:00").overlaps(Window("10:00", "10:15"))


def test_self_overlap_is_order_independent():
    windows = [Window("09:00", "10:00"), Window("13:00", "14:00"), Window("09:45", "11:00")]
    for permutation in itertools.permutations(windows):
        assert find_self_overlap(list(permutation)) is not None


def test_self_overlap_ignores_disjoint_permutations():
    windows = [Window("09:00", "10:00"), Window("10:00", "11:00"), Window("14:00", "15:00")]
    for permutation in itertools.permutations(windows):
        assert find_self_overlap(list(permutation)) is None


def test_cross_overlap():
    candidates = [Window("14:00", "15:00"), Window("10:30", "11:30")]
    existing = [Window("09:00", "10:00"), Window("11:00", "12:00")]
    overlap = find_cross_overlap(candidates, existing)
    assert overlap.candidate == Window("10:30", "11:30")
    assert overlap.existing == Window("11:00", "12:00")
    assert find_cross_overlap([Window("10:00", "11:00")], existing) is None


def test_window_remaining_capacity_and_label():
    window = Window("09:00", "10:00", capacity=5, booked=2)
    assert window.remaining_capacity == 3
    assert window.label() == "09:00-10:00"
