"""Wall-clock helpers. Times are "HH:MM" strings, converted to minutes since midnight."""

import re

MINUTES_PER_DAY = 24 * 60

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def is_valid_time(value: str) -> bool:
    """Check for a zero-padded 24h "HH:MM" string."""
    return bool(value) and bool(_TIME_PATTERN.match(value))


def parse_time(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight. "24:00" is accepted as end of day."""
    if value == "24:00":
        return MINUTES_PER_DAY
    if not is_valid_time(value):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_time(minutes: int) -> str:
    """Convert minutes since midnight back to "HH:MM"."""
    if minutes < 0 or minutes > MINUTES_PER_DAY:
        raise ValueError(f"Minute offset {minutes} is outside a single day")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_minutes(value: str, minutes: int) -> str:
    """Wall-clock addition. The result must stay within the same day."""
    return format_time(parse_time(value) + minutes)


def overlaps(start1: int, end1: int, start2: int, end2: int) -> bool:
    """Half-open interval overlap: [s1, e1) and [s2, e2) share at least a minute.

    Back-to-back intervals (``end1 == start2``) do not overlap.
    """
    return start1 < end2 and end1 > start2


def contains(outer_start: int, outer_end: int, start: int, end: int) -> bool:
    """Check that [start, end) lies entirely inside [outer_start, outer_end)."""
    return outer_start <= start and end <= outer_end
