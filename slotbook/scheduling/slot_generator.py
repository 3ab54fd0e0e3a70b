"""
Expansion of a weekly availability template into concrete time slots.

Pure functions only: nothing here touches the database. The caller persists
the result through ``AvailabilityLedger.replace_all``.

Buffer semantics: ``buffer_before`` and ``buffer_after`` are always summed
into one gap between consecutive slots of the same rule. The first slot of a
window starts exactly at the window start and the last one may end exactly at
the window end.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator

from slotbook.core import config
from slotbook.scheduling.errors import InvalidRangeError, InvalidScheduleConfigError

logger = logging.getLogger(__name__)

TIME_OF_DAY_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


@dataclass(frozen=True)
class ParsedRule:
    day_of_week: int  # 0=Sunday
    start_minute: int
    end_minute: int


@dataclass(frozen=True)
class GeneratedSlot:
    """A candidate slot; value-like, identified only by its bounds."""
    start_time: datetime
    end_time: datetime
    available: bool = True

    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


def parse_time_of_day(value: str) -> int:
    """Parse ``HH:MM`` into a minute-of-day. Raises ValueError when malformed."""
    match = TIME_OF_DAY_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"Time must be in HH:MM format, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_time_of_day(minute_of_day: int) -> str:
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


def sunday_based_weekday(day: date) -> int:
    # date.weekday() is Monday=0; rules use Sunday=0.
    return (day.weekday() + 1) % 7


def describe_rule(rule) -> str:
    return f"day {rule.day_of_week} {rule.start_time}-{rule.end_time}"


def parse_rule(rule) -> ParsedRule:
    """Validate one availability rule. Raises ValueError when unusable."""
    if rule.day_of_week not in range(7):
        raise ValueError(f"Day of week must be between 0 and 6, got {rule.day_of_week}")

    start_minute = parse_time_of_day(rule.start_time)
    end_minute = parse_time_of_day(rule.end_time)
    if start_minute >= end_minute:
        raise ValueError(f"Start time {rule.start_time} must be before end time {rule.end_time}")

    return ParsedRule(day_of_week=rule.day_of_week, start_minute=start_minute, end_minute=end_minute)


def parse_rules(rules: Iterable) -> list[ParsedRule]:
    """Parse all rules, skipping (and logging) the malformed ones."""
    parsed: list[ParsedRule] = []
    for rule in rules:
        try:
            parsed.append(parse_rule(rule))
        except ValueError as exc:
            logger.warning("Skipping malformed availability rule (%s): %s", describe_rule(rule), exc)
    return parsed


def validate_schedule_settings(duration: int, buffer_before: int, buffer_after: int) -> None:
    if duration is None or duration < config.MIN_SLOT_DURATION_MINUTES:
        raise InvalidScheduleConfigError(
            f"Duration must be at least {config.MIN_SLOT_DURATION_MINUTES} minutes."
        )
    if (buffer_before or 0) < 0 or (buffer_after or 0) < 0:
        raise InvalidScheduleConfigError("Buffers must not be negative.")


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def iterate_days(range_start: datetime, range_end: datetime) -> Iterator[datetime]:
    """Yield each calendar day in the range, inclusive, at midnight."""
    current = range_start.replace(hour=0, minute=0, second=0, microsecond=0)
    while current <= range_end:
        yield current
        current += timedelta(days=1)


def expand_rule(
    day: datetime,
    rule: ParsedRule,
    duration: int,
    gap: int,
) -> Iterator[GeneratedSlot]:
    """Emit consecutive slots for one rule on one day."""
    slot_length = timedelta(minutes=duration)
    step = timedelta(minutes=duration + gap)
    slot_start = day + timedelta(minutes=rule.start_minute)
    day_end = day + timedelta(minutes=rule.end_minute)

    while slot_start + slot_length <= day_end:
        yield GeneratedSlot(start_time=slot_start, end_time=slot_start + slot_length)
        slot_start += step


def generate_time_slots(
    schedule,
    range_start: date | datetime,
    range_end: date | datetime,
    *,
    require_rules: bool = False,
) -> list[GeneratedSlot]:
    """
    Expand ``schedule``'s weekly rules into slots between two dates, inclusive.

    ``schedule`` needs ``duration``, ``buffer_before``, ``buffer_after`` and
    ``availability_rules`` (each with ``day_of_week``, ``start_time`` and
    ``end_time``). An empty result is valid.

    Raises:
        InvalidRangeError: ``range_start`` is after ``range_end``.
        InvalidScheduleConfigError: duration below the minimum, negative
            buffers, or no usable rule while ``require_rules`` is set.
    """
    start = _as_datetime(range_start)
    end = _as_datetime(range_end)
    if start > end:
        raise InvalidRangeError(start, end)

    duration = schedule.duration
    buffer_before = schedule.buffer_before or 0
    buffer_after = schedule.buffer_after or 0
    validate_schedule_settings(duration, buffer_before, buffer_after)

    rules = parse_rules(schedule.availability_rules)
    if require_rules and not rules:
        raise InvalidScheduleConfigError("Schedule has no usable availability rules.")

    rules_by_day: dict[int, list[ParsedRule]] = {}
    for rule in rules:
        rules_by_day.setdefault(rule.day_of_week, []).append(rule)

    gap = buffer_before + buffer_after
    slots: list[GeneratedSlot] = []
    for day in iterate_days(start, end):
        for rule in rules_by_day.get(sunday_based_weekday(day), []):
            slots.extend(
                slot for slot in expand_rule(day, rule, duration, gap)
                if slot.start_time >= start
            )

    slots.sort(key=lambda slot: (slot.start_time, slot.end_time))
    logger.debug(
        "Generated %d slots between %s and %s from %d rules",
        len(slots),
        start,
        end,
        len(rules),
    )
    return slots


def find_overlapping_rules(rules: Iterable) -> list[tuple]:
    """
    Return pairs of rules that share a weekday and have intersecting windows.

    Malformed rules are ignored here; they are reported separately.
    """
    overlaps: list[tuple] = []
    parsed: list[tuple[object, ParsedRule]] = []
    for rule in rules:
        try:
            parsed.append((rule, parse_rule(rule)))
        except ValueError:
            continue

    for index, (rule, current) in enumerate(parsed):
        for other_rule, other in parsed[index + 1:]:
            if (
                current.day_of_week == other.day_of_week
                and current.start_minute < other.end_minute
                and other.start_minute < current.end_minute
            ):
                overlaps.append((rule, other_rule))
    return overlaps
