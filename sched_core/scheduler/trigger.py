"""
TRIGGER
=======

Due-task evaluation for 5-field cron triggers.

Field order: ``minute hour day-of-month month day-of-week``. Each field is
``*``, a number, a comma list, a range ``a-b``, or a step (``*/n``, ``a-b/n``,
``a/n``). Month and weekday fields also accept three-letter names. Weekday 0
and 7 are both Sunday.

Matching is AND across all five fields (day-of-month AND day-of-week), at
minute granularity. This differs from classic Vixie cron, which ORs the two
day fields when both are restricted.

Idempotency
-----------
The dispatcher polls every ~30s, so a trigger matches several polls within
the same minute. ``is_due`` therefore applies a guard after a match:

- ``"interval"`` (default): due only if more than ``min_interval`` (1 hour)
  has elapsed since the last execution. Sub-hourly triggers such as
  ``*/15 * * * *`` fire at most once per hour under this mode.
- ``"minute"``: due only if the last execution is before the start of the
  current minute.

Usage::

    from sched_core.scheduler.trigger import is_due

    is_due("0 16 * * *", last_execution=None, now=now)  # True at 16:00
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import FrozenSet, List, Optional, Tuple, Union

from croniter import croniter


DEFAULT_IDEMPOTENCY_WINDOW = timedelta(hours=1)
IDEMPOTENCY_MODES = ("interval", "minute")

_MONTH_NAMES = ["jan", "feb", "mar", "apr", "may", "jun",
                "jul", "aug", "sep", "oct", "nov", "dec"]
_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_DOW_DISPLAY = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class InvalidTrigger(ValueError):
    """Trigger expression cannot be parsed."""


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Tuple[str, ...] = ()


_FIELDS = (
    _FieldSpec("minute", 0, 59),
    _FieldSpec("hour", 0, 23),
    _FieldSpec("day_of_month", 1, 31),
    _FieldSpec("month", 1, 12, tuple(_MONTH_NAMES)),
    _FieldSpec("day_of_week", 0, 7, tuple(_DOW_NAMES)),
)


# ============================================================================
# PARSING
# ============================================================================

def _parse_value(token: str, spec: _FieldSpec) -> int:
    lowered = token.lower()
    if spec.names and lowered in spec.names:
        index = spec.names.index(lowered)
        # Month names are 1-based, weekday names 0-based
        return index + 1 if spec.name == "month" else index
    if not token.isdigit():
        raise InvalidTrigger(f"Invalid {spec.name} value: {token!r}")
    value = int(token)
    if value < spec.low or value > spec.high:
        raise InvalidTrigger(
            f"{spec.name} value {value} out of range {spec.low}-{spec.high}"
        )
    return value


def _parse_field(text: str, spec: _FieldSpec) -> FrozenSet[int]:
    values = set()
    for item in text.split(","):
        if not item:
            raise InvalidTrigger(f"Empty list item in {spec.name} field: {text!r}")

        step = 1
        if "/" in item:
            item, step_text = item.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidTrigger(f"Invalid step in {spec.name} field: {step_text!r}")
            step = int(step_text)

        if item == "*":
            start, end = spec.low, spec.high
        elif "-" in item:
            low_text, high_text = item.split("-", 1)
            start, end = _parse_value(low_text, spec), _parse_value(high_text, spec)
            if start > end:
                raise InvalidTrigger(f"Descending range in {spec.name} field: {item!r}")
        else:
            start = _parse_value(item, spec)
            # "a/n" means "from a to the end of the range, every n"
            end = spec.high if step > 1 else start

        values.update(range(start, end + 1, step))

    if spec.name == "day_of_week" and 7 in values:
        values.discard(7)
        values.add(0)
    return frozenset(values)


@dataclass(frozen=True)
class CronTrigger:
    """Parsed trigger expression: one allowed-value set per field."""
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]  # 0 = Sunday

    @classmethod
    def parse(cls, expression: str) -> "CronTrigger":
        return _parse_cached(" ".join(str(expression or "").split()))

    def matches(self, when: datetime) -> bool:
        """True if every field matches ``when`` (seconds are ignored)."""
        cron_weekday = (when.weekday() + 1) % 7
        return (
            when.minute in self.minutes
            and when.hour in self.hours
            and when.day in self.days
            and when.month in self.months
            and cron_weekday in self.weekdays
        )


@lru_cache(maxsize=256)
def _parse_cached(expression: str) -> CronTrigger:
    parts = expression.split(" ") if expression else []
    if len(parts) != 5:
        raise InvalidTrigger(
            f"Trigger must have 5 fields (minute hour day month weekday), got {len(parts)}: {expression!r}"
        )
    sets = [_parse_field(part, spec) for part, spec in zip(parts, _FIELDS)]
    return CronTrigger(expression, *sets)


# ============================================================================
# DUE-NESS
# ============================================================================

def is_due(
    trigger: Union[str, CronTrigger],
    last_execution: Optional[datetime],
    now: datetime,
    min_interval: timedelta = DEFAULT_IDEMPOTENCY_WINDOW,
    mode: str = "interval",
) -> bool:
    """
    Decide whether a task is due at ``now``. Pure; no I/O.

    Args:
        trigger: Expression string or parsed CronTrigger
        last_execution: When the task last ran successfully (None = never)
        now: Current time, already in the scheduler's timezone
        min_interval: Idempotency window for ``mode="interval"``
        mode: ``"interval"`` or ``"minute"``

    Raises:
        InvalidTrigger: if the expression cannot be parsed
    """
    parsed = trigger if isinstance(trigger, CronTrigger) else CronTrigger.parse(trigger)
    if not parsed.matches(now):
        return False
    if last_execution is None:
        return True

    if mode == "minute":
        minute_start = now.replace(second=0, microsecond=0)
        return last_execution < minute_start
    if mode != "interval":
        raise ValueError(f"Unknown idempotency mode: {mode!r}")
    return (now - last_execution) > min_interval


# ============================================================================
# UTILITIES
# ============================================================================

def is_valid_trigger(expression: str) -> bool:
    """Validate against the local grammar and croniter."""
    try:
        CronTrigger.parse(expression)
    except InvalidTrigger:
        return False
    return croniter.is_valid(expression)


# ============================================================================
# READABLE SCHEDULES
# ============================================================================

_AT = r"at (\d{1,2}):(\d{2})"
_SCHEDULE_PATTERNS = (
    (re.compile(rf"^every day {_AT}$"), lambda m: _at_cron(m, 1, "*")),
    (re.compile(rf"^every weekday {_AT}$"), lambda m: _at_cron(m, 1, "1-5")),
    (re.compile(rf"^every weekend {_AT}$"), lambda m: _at_cron(m, 1, "0,6")),
    (re.compile(rf"^every ({'|'.join(d.lower() for d in _DOW_DISPLAY)}) {_AT}$"),
     lambda m: _at_cron(m, 2, str(_DOW_DISPLAY.index(m.group(1).capitalize())))),
    (re.compile(r"^every (\d+) minutes?$"), lambda m: _every_minutes(int(m.group(1)))),
    (re.compile(r"^every hour$"), lambda m: "0 * * * *"),
)


def _at_cron(match: "re.Match", first: int, weekdays: str) -> str:
    hour, minute = int(match.group(first)), int(match.group(first + 1))
    if hour > 23 or minute > 59:
        raise InvalidTrigger(f"Invalid time of day: {hour:02d}:{minute:02d}")
    return f"{minute} {hour} * * {weekdays}"


def _every_minutes(minutes: int) -> str:
    if not 1 <= minutes <= 59:
        raise InvalidTrigger(f"Minute interval must be 1-59, got {minutes}")
    return "* * * * *" if minutes == 1 else f"*/{minutes} * * * *"


def parse_schedule(text: str) -> str:
    """
    Turn a readable schedule or a cron expression into a cron expression.

    Accepted readable forms (case-insensitive)::

        every day at HH:MM          every <weekday> at HH:MM
        every weekday at HH:MM      every weekend at HH:MM
        every N minutes             every hour

    Raises:
        InvalidTrigger: neither a readable form nor a valid expression
    """
    normalized = " ".join(str(text or "").split())
    lowered = normalized.lower()
    for pattern, build in _SCHEDULE_PATTERNS:
        match = pattern.match(lowered)
        if match:
            return build(match)
    if not is_valid_trigger(normalized):
        raise InvalidTrigger(f"Invalid schedule: {text!r}")
    return normalized


def next_run(expression: str, after: datetime) -> datetime:
    """Next matching time strictly after ``after`` (AND day semantics)."""
    CronTrigger.parse(expression)
    return croniter(expression, after, day_or=False).get_next(datetime)


def next_runs(expression: str, after: datetime, count: int = 5) -> List[datetime]:
    CronTrigger.parse(expression)
    it = croniter(expression, after, day_or=False)
    return [it.get_next(datetime) for _ in range(count)]


def _single(values: FrozenSet[int]) -> Optional[int]:
    return next(iter(values)) if len(values) == 1 else None


def describe_trigger(expression: str) -> str:
    """Human-readable rendering of common trigger shapes."""
    try:
        trigger = CronTrigger.parse(expression)
    except InvalidTrigger:
        return f"Invalid trigger: {expression}"

    minute_f, hour_f, day_f, month_f, dow_f = trigger.expression.split(" ")
    minute, hour = _single(trigger.minutes), _single(trigger.hours)

    if minute_f.startswith("*/") and (hour_f, day_f, month_f, dow_f) == ("*", "*", "*", "*"):
        return f"Every {minute_f[2:]} minutes"
    if minute_f == "*" and (hour_f, day_f, month_f, dow_f) == ("*", "*", "*", "*"):
        return "Every minute"
    if minute is not None and hour_f.startswith("*/") and (day_f, month_f, dow_f) == ("*", "*", "*"):
        return f"Every {hour_f[2:]} hours at minute {minute}"
    if minute is not None and hour_f == "*" and (day_f, month_f, dow_f) == ("*", "*", "*"):
        return f"Every hour at minute {minute}"

    if minute is None or hour is None:
        return f"Cron: {trigger.expression}"

    at = f"{hour:02d}:{minute:02d}"
    if (day_f, month_f, dow_f) == ("*", "*", "*"):
        return f"Every day at {at}"
    if (day_f, month_f) == ("*", "*"):
        days = sorted(trigger.weekdays)
        if days == [1, 2, 3, 4, 5]:
            return f"Every weekday at {at}"
        if days == [0, 6]:
            return f"Every weekend at {at}"
        return f"Every {', '.join(_DOW_DISPLAY[d] for d in days)} at {at}"
    day = _single(trigger.days)
    if day is not None and (month_f, dow_f) == ("*", "*"):
        return f"On day {day} of every month at {at}"
    return f"Cron: {trigger.expression}"
