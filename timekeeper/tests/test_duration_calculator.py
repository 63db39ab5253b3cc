from datetime import datetime, timedelta, timezone

import pytest

from timekeeper.core.errors import ValidationError
from timekeeper.models.time_entry import EntryStatus, TimeEntry
from timekeeper.services.duration import (
    MAX_DURATION_SECONDS,
    as_utc,
    check_duration_bounds,
    effective_duration,
    elapsed_since,
    seconds_between,
)

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def test_elapsed_since_floors_to_whole_seconds():
    assert elapsed_since(T0, T0 + timedelta(seconds=299, milliseconds=999)) == 299


def test_elapsed_since_clamps_clock_skew_to_zero(caplog):
    with caplog.at_level("WARNING"):
        assert elapsed_since(T0, T0 - timedelta(seconds=30)) == 0
    assert "clock synchronization" in caplog.text


def test_naive_datetimes_are_read_as_utc():
    naive = datetime(2026, 3, 2, 9, 0, 0)
    assert as_utc(naive) == T0
    assert elapsed_since(naive, T0 + timedelta(seconds=10)) == 10

    plus_two = timezone(timedelta(hours=2))
    assert as_utc(datetime(2026, 3, 2, 11, 0, 0, tzinfo=plus_two)) == T0


def test_effective_duration_running_adds_elapsed():
    entry = TimeEntry(status=EntryStatus.RUNNING, duration=300, start_time=T0)
    assert effective_duration(entry, T0 + timedelta(seconds=120)) == 420


@pytest.mark.parametrize("status", [EntryStatus.PAUSED, EntryStatus.STOPPED])
def test_effective_duration_frozen_when_not_running(status):
    entry = TimeEntry(status=status, duration=300, start_time=T0)
    assert effective_duration(entry, T0 + timedelta(hours=5)) == 300


def test_explicit_negative_range_is_rejected_not_clamped():
    with pytest.raises(ValidationError):
        seconds_between(T0, T0 - timedelta(seconds=1))
    assert seconds_between(T0, T0 + timedelta(minutes=10)) == 600


def test_duration_bounds():
    assert check_duration_bounds(0) == 0
    assert check_duration_bounds(MAX_DURATION_SECONDS) == MAX_DURATION_SECONDS
    with pytest.raises(ValidationError):
        check_duration_bounds(-1)
    with pytest.raises(ValidationError):
        check_duration_bounds(MAX_DURATION_SECONDS + 1)
