from datetime import UTC, datetime, timedelta

import pytest

from gitwright.exceptions import ScheduleError
from gitwright.scheduler import (
    CronWhen,
    DelayedWhen,
    NoScheduleWhen,
    ScheduledWhen,
    compute_next_run,
    is_recurring,
    parse_when,
    schedule_to_text,
    when_to_schedule,
)

# A Monday.
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def test_parse_when_discriminates_on_type():
    assert isinstance(parse_when({"type": "scheduled", "date": "2026-03-05T12:00:00Z"}), ScheduledWhen)
    assert parse_when({"type": "delayed", "delayInSeconds": 30}).delay_in_seconds == 30
    assert parse_when({"type": "cron", "cron": " 0 9 * * 1 "}).cron == "0 9 * * 1"
    assert isinstance(parse_when({"type": "no-schedule"}), NoScheduleWhen)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "weekly"},
        {"type": "delayed", "delayInSeconds": -1},
        {"type": "cron", "cron": "at noon"},
        {"type": "scheduled"},
        "tomorrow",
    ],
)
def test_parse_when_rejects_bad_input(payload):
    with pytest.raises(ScheduleError, match="Not a valid schedule input"):
        parse_when(payload)


def test_when_to_schedule_shapes():
    assert when_to_schedule(ScheduledWhen(date=datetime(2026, 3, 5, 12, 0)), now=NOW) == {
        "type": "scheduled",
        "date": "2026-03-05T12:00:00+00:00",
    }
    assert when_to_schedule(DelayedWhen(delay_in_seconds=90), now=NOW) == {
        "type": "delayed",
        "delay_in_seconds": 90,
        "date": "2026-03-02T10:01:30+00:00",
    }
    assert when_to_schedule(CronWhen(cron="*/15 * * * *"), now=NOW) == {"type": "cron", "cron": "*/15 * * * *"}
    with pytest.raises(ScheduleError):
        when_to_schedule(NoScheduleWhen(), now=NOW)


def test_schedule_to_text_and_recurrence():
    assert schedule_to_text({"type": "scheduled", "date": "2026-03-05T12:00:00+00:00"}) == "at 2026-03-05T12:00:00+00:00"
    assert schedule_to_text({"type": "delayed", "delay_in_seconds": 90}) == "in 90s"
    assert schedule_to_text({"type": "cron", "cron": "0 9 * * 1"}) == "cron 0 9 * * 1"
    assert schedule_to_text({}) == "unknown"
    assert is_recurring({"type": "cron", "cron": "0 9 * * 1"})
    assert not is_recurring({"type": "delayed", "delay_in_seconds": 90})


def test_compute_next_run_for_one_shot_schedules():
    assert compute_next_run({"type": "scheduled", "date": "2026-03-05T12:00:00+00:00"}, now=NOW) == datetime(
        2026, 3, 5, 12, 0, tzinfo=UTC
    )
    assert compute_next_run({"type": "delayed", "delay_in_seconds": 60}, now=NOW) == NOW + timedelta(seconds=60)
    with pytest.raises(ScheduleError, match="no date"):
        compute_next_run({"type": "scheduled"}, now=NOW)


def test_compute_next_run_for_cron():
    weekly = {"type": "cron", "cron": "0 9 * * 1"}

    assert compute_next_run(weekly, now=NOW) == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)
    assert compute_next_run(weekly, now=NOW.replace(hour=8)) == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def test_compute_next_run_cron_never_returns_now():
    on_the_dot = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    assert compute_next_run({"type": "cron", "cron": "0 9 * * 1"}, now=on_the_dot) == datetime(
        2026, 3, 9, 9, 0, tzinfo=UTC
    )


def test_compute_next_run_unknown_type():
    with pytest.raises(ScheduleError, match="Unknown schedule type"):
        compute_next_run({"type": "sometimes"}, now=NOW)


def test_cron_weekdays_use_crontab_numbering():
    assert compute_next_run({"type": "cron", "cron": "0 9 * * 0"}, now=NOW) == datetime(2026, 3, 8, 9, 0, tzinfo=UTC)
    assert compute_next_run({"type": "cron", "cron": "0 9 * * 7"}, now=NOW) == datetime(2026, 3, 8, 9, 0, tzinfo=UTC)
    assert compute_next_run({"type": "cron", "cron": "30 8 * * 1-5"}, now=NOW) == datetime(
        2026, 3, 3, 8, 30, tzinfo=UTC
    )


def test_cron_step_values_are_left_numeric():
    assert compute_next_run({"type": "cron", "cron": "*/10 * * * *"}, now=NOW) == datetime(
        2026, 3, 2, 10, 10, tzinfo=UTC
    )
