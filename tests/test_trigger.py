"""Tests for due-task evaluation and trigger utilities."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from sched_core.scheduler.trigger import (
    CronTrigger,
    InvalidTrigger,
    describe_trigger,
    is_due,
    is_valid_trigger,
    next_run,
    next_runs,
    parse_schedule,
)

UTC = timezone.utc

# (low, high) per field, in expression order
RANGES = [(0, 59), (0, 23), (1, 31), (1, 12), (0, 6)]


def _random_field(rng: random.Random, low: int, high: int):
    """Return (text, allowed values) for one randomly shaped field."""
    shape = rng.choice(["star", "value", "list", "range", "step"])
    if shape == "star":
        return "*", set(range(low, high + 1))
    if shape == "value":
        v = rng.randint(low, high)
        return str(v), {v}
    if shape == "list":
        values = sorted(rng.sample(range(low, high + 1), k=min(3, high - low + 1)))
        return ",".join(str(v) for v in values), set(values)
    if shape == "range":
        a = rng.randint(low, high)
        b = rng.randint(a, high)
        return f"{a}-{b}", set(range(a, b + 1))
    n = rng.randint(1, max(1, (high - low) // 2))
    return f"*/{n}", set(range(low, high + 1, n))


def _components(when: datetime):
    return [when.minute, when.hour, when.day, when.month, (when.weekday() + 1) % 7]


class TestIsDueProperty:

    def test_matches_iff_every_field_matches(self):
        rng = random.Random(20250312)
        start = datetime(2025, 1, 1, tzinfo=UTC)
        matched = 0
        for _ in range(2000):
            fields = [_random_field(rng, low, high) for low, high in RANGES]
            expression = " ".join(text for text, _ in fields)
            now = start + timedelta(minutes=rng.randint(0, 365 * 24 * 60))

            expected = all(c in allowed for c, (_, allowed) in zip(_components(now), fields))
            assert is_due(expression, None, now) is expected, expression
            matched += expected
        # Sanity check that the generator exercises both outcomes
        assert matched > 0

    def test_seconds_are_ignored(self):
        now = datetime(2025, 3, 12, 16, 0, 59, 999999, tzinfo=UTC)
        assert is_due("0 16 * * *", None, now) is True


class TestIsDueScenarios:

    def test_first_run_at_trigger_time(self):
        now = datetime(2025, 3, 12, 16, 0, 0, tzinfo=UTC)
        assert is_due("0 16 * * *", None, now) is True

    def test_not_due_again_after_execution(self):
        first = datetime(2025, 3, 12, 16, 0, 0, tzinfo=UTC)
        assert is_due("0 16 * * *", None, first)
        # Later poll in the same matching minute
        assert is_due("0 16 * * *", first, first + timedelta(seconds=30)) is False
        assert is_due("0 16 * * *", first, datetime(2025, 3, 12, 16, 1, tzinfo=UTC)) is False

    def test_interval_exceeded_is_due(self):
        now = datetime(2025, 3, 12, 22, 30, tzinfo=UTC)
        assert is_due("30 22 * * *", now - timedelta(hours=25), now) is True

    def test_recent_execution_is_not_due(self):
        now = datetime(2025, 3, 12, 22, 30, tzinfo=UTC)
        assert is_due("30 22 * * *", now - timedelta(minutes=10), now) is False

    def test_interval_boundary_is_exclusive(self):
        now = datetime(2025, 3, 12, 22, 30, tzinfo=UTC)
        assert is_due("30 22 * * *", now - timedelta(hours=1), now) is False
        assert is_due("30 22 * * *", now - timedelta(hours=1, seconds=1), now) is True

    def test_non_matching_time_is_never_due(self):
        now = datetime(2025, 3, 12, 15, 59, tzinfo=UTC)
        assert is_due("0 16 * * *", None, now) is False

    def test_sub_hourly_trigger_is_capped_in_interval_mode(self):
        first = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
        later = datetime(2025, 3, 12, 10, 15, tzinfo=UTC)
        assert is_due("*/15 * * * *", first, later) is False

    def test_custom_window(self):
        first = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
        later = datetime(2025, 3, 12, 10, 15, tzinfo=UTC)
        assert is_due("*/15 * * * *", first, later, min_interval=timedelta(minutes=5)) is True


class TestMinuteMode:

    def test_fires_once_per_matching_minute(self):
        first = datetime(2025, 3, 12, 10, 15, 2, tzinfo=UTC)
        assert is_due("*/15 * * * *", None, first, mode="minute")
        assert is_due("*/15 * * * *", first, first + timedelta(seconds=30), mode="minute") is False
        assert is_due("*/15 * * * *", first, datetime(2025, 3, 12, 10, 30, 1, tzinfo=UTC), mode="minute")

    def test_unknown_mode_rejected(self):
        now = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
        with pytest.raises(ValueError):
            is_due("0 10 * * *", now - timedelta(days=1), now, mode="hourly")


class TestParsing:

    @pytest.mark.parametrize("expression", [
        "0 16 * * *",
        "*/5 * * * *",
        "0 9-17/2 * * 1-5",
        "30 8 1,15 * *",
        "0 9 * jan,jul mon-fri",
        "0 0 * * 7",
    ])
    def test_valid_expressions(self, expression):
        assert is_valid_trigger(expression)

    @pytest.mark.parametrize("expression", [
        "",
        "* * * *",
        "* * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "*/0 * * * *",
        "5-1 * * * *",
        "a * * * *",
        "1,,2 * * * *",
    ])
    def test_invalid_expressions(self, expression):
        assert not is_valid_trigger(expression)
        with pytest.raises(InvalidTrigger):
            CronTrigger.parse(expression)

    def test_sunday_as_seven(self):
        sunday = datetime(2025, 3, 16, 8, 0, tzinfo=UTC)
        assert is_due("0 8 * * 7", None, sunday)
        assert is_due("0 8 * * sun", None, sunday)

    def test_day_fields_are_anded(self):
        # The 13th of June 2025 is a Friday; the 12th is a Thursday
        assert is_due("0 9 13 * 5", None, datetime(2025, 6, 13, 9, 0, tzinfo=UTC))
        assert not is_due("0 9 13 * 5", None, datetime(2025, 6, 12, 9, 0, tzinfo=UTC))
        assert not is_due("0 9 13 * 5", None, datetime(2025, 6, 20, 9, 0, tzinfo=UTC))

    def test_whitespace_is_normalized(self):
        assert CronTrigger.parse("  0   16 * *  * ") == CronTrigger.parse("0 16 * * *")


class TestUtilities:

    @pytest.mark.parametrize("expression,expected", [
        ("*/15 * * * *", "Every 15 minutes"),
        ("* * * * *", "Every minute"),
        ("5 * * * *", "Every hour at minute 5"),
        ("0 */2 * * *", "Every 2 hours at minute 0"),
        ("0 16 * * *", "Every day at 16:00"),
        ("30 9 * * 1-5", "Every weekday at 09:30"),
        ("0 8 * * 0,6", "Every weekend at 08:00"),
        ("0 8 * * 0,3", "Every Sunday, Wednesday at 08:00"),
        ("0 7 1 * *", "On day 1 of every month at 07:00"),
        ("bogus", "Invalid trigger: bogus"),
    ])
    def test_describe_trigger(self, expression, expected):
        assert describe_trigger(expression) == expected

    def test_next_run(self):
        after = datetime(2025, 3, 12, 16, 0, tzinfo=UTC)
        assert next_run("0 16 * * *", after) == datetime(2025, 3, 13, 16, 0, tzinfo=UTC)

    def test_next_runs_use_and_day_semantics(self):
        after = datetime(2025, 6, 1, tzinfo=UTC)
        runs = next_runs("0 9 13 * 5", after, count=2)
        assert all(r.day == 13 and r.weekday() == 4 for r in runs)
        assert runs[0] == datetime(2025, 6, 13, 9, 0, tzinfo=UTC)

    def test_next_runs_reject_invalid(self):
        with pytest.raises(InvalidTrigger):
            next_runs("61 * * * *", datetime(2025, 1, 1, tzinfo=UTC))


class TestParseSchedule:

    @pytest.mark.parametrize("text,expected", [
        ("every day at 16:00", "0 16 * * *"),
        ("Every Day At 7:05", "5 7 * * *"),
        ("every weekday at 09:30", "30 9 * * 1-5"),
        ("every weekend at 10:00", "0 10 * * 0,6"),
        ("every monday at 8:15", "15 8 * * 1"),
        ("every sunday at 23:59", "59 23 * * 0"),
        ("every 15 minutes", "*/15 * * * *"),
        ("every 1 minute", "* * * * *"),
        ("every hour", "0 * * * *"),
        ("  every   day at 16:00 ", "0 16 * * *"),
    ])
    def test_readable_forms(self, text, expected):
        assert parse_schedule(text) == expected
        assert is_valid_trigger(expected)

    def test_cron_passes_through_normalized(self):
        assert parse_schedule(" 0  9 * * mon-fri ") == "0 9 * * mon-fri"

    @pytest.mark.parametrize("text", [
        "every day at 25:00",
        "every day at 12:60",
        "every 0 minutes",
        "every 90 minutes",
        "every morning",
        "61 * * * *",
        "",
    ])
    def test_rejects_invalid(self, text):
        with pytest.raises(InvalidTrigger):
            parse_schedule(text)

    def test_readable_schedule_is_due_at_its_time(self):
        trigger = parse_schedule("every weekday at 16:00")
        # 2025-03-12 is a Wednesday, 2025-03-15 a Saturday
        assert is_due(trigger, None, datetime(2025, 3, 12, 16, 0, 10, tzinfo=UTC))
        assert not is_due(trigger, None, datetime(2025, 3, 15, 16, 0, 10, tzinfo=UTC))
