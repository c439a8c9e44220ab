"""
time_model.py
-------------
Wall-clock primitives shared by every stage of the engine.

  * 'HH:MM' <-> minutes-since-midnight conversion (24:00 allowed as an end).
  * A single weekday convention: Weekday.SUNDAY == 0 ... Weekday.SATURDAY == 6.
    Every other numbering is translated here, at ingestion, and nowhere else.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import IntEnum
from typing import Any, Iterable, List, Optional

MINUTES_PER_DAY = 24 * 60
DAY_START = "00:00"
DAY_END = "24:00"

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


class Weekday(IntEnum):
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6


# Name aliases accepted at the boundary (English + Korean single-char forms).
_DAY_ALIASES = {
    "sun": Weekday.SUNDAY, "sunday": Weekday.SUNDAY, "일": Weekday.SUNDAY,
    "mon": Weekday.MONDAY, "monday": Weekday.MONDAY, "월": Weekday.MONDAY,
    "tue": Weekday.TUESDAY, "tues": Weekday.TUESDAY, "tuesday": Weekday.TUESDAY, "화": Weekday.TUESDAY,
    "wed": Weekday.WEDNESDAY, "wednesday": Weekday.WEDNESDAY, "수": Weekday.WEDNESDAY,
    "thu": Weekday.THURSDAY, "thur": Weekday.THURSDAY, "thurs": Weekday.THURSDAY,
    "thursday": Weekday.THURSDAY, "목": Weekday.THURSDAY,
    "fri": Weekday.FRIDAY, "friday": Weekday.FRIDAY, "금": Weekday.FRIDAY,
    "sat": Weekday.SATURDAY, "saturday": Weekday.SATURDAY, "토": Weekday.SATURDAY,
}


# ── time helpers ──────────────────────────────────────────────────────────────

def to_minutes(t: str) -> int:
    """'HH:MM' -> total minutes since midnight. '24:00' -> 1440."""
    match = _HHMM.match(str(t).strip())
    if not match:
        raise ValueError(f"invalid time of day: {t!r}")
    h, m = int(match.group(1)), int(match.group(2))
    if m > 59 or h > 24 or (h == 24 and m != 0):
        raise ValueError(f"invalid time of day: {t!r}")
    return h * 60 + m


def to_hhmm(minutes: int) -> str:
    """Total minutes -> 'HH:MM'. 1440 renders as '24:00'."""
    h, m = divmod(int(minutes), 60)
    return f"{h:02d}:{m:02d}"


def canonical_time(value: Any) -> str:
    """
    Accepts 'H:MM', 'HH:MM', or an ISO datetime string / datetime object
    (exceptions are stored as full timestamps upstream) and returns 'HH:MM'.
    Zone-aware timestamps are converted to local time first.
    """
    if isinstance(value, datetime):
        return _local_hhmm(value)
    text = str(value).strip()
    if "T" in text:
        return _local_hhmm(datetime.fromisoformat(text.replace("Z", "+00:00")))
    return to_hhmm(to_minutes(text))


def _local_hhmm(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return f"{moment.hour:02d}:{moment.minute:02d}"


def overlaps(s1: int, e1: int, s2: int, e2: int) -> bool:
    return s1 < e2 and s2 < e1


def duration_between(start: str, end: str) -> int:
    """Minutes from start to end, wrapping past midnight when end <= start."""
    s, e = to_minutes(start), to_minutes(end)
    if e <= s:
        e += MINUTES_PER_DAY
    return e - s


def add_minutes(t: str, minutes: int) -> str:
    """Shift a wall-clock time, wrapping at midnight (never yields '24:00')."""
    return to_hhmm((to_minutes(t) + minutes) % MINUTES_PER_DAY)


# ── weekday canonicalization ─────────────────────────────────────────────────

def weekday_of(d: date) -> Weekday:
    """Python's Monday-first weekday() -> canonical Sunday-first Weekday."""
    return Weekday((d.weekday() + 1) % 7)


def canonical_weekday(value: Any) -> Weekday:
    """
    Translate any accepted day representation into the canonical Weekday.

      - Weekday / int 0..6  : already canonical (0 = Sunday)
      - int 7               : database convention for Sunday
      - 'Mon', 'monday', '월' ...
      - date / datetime     : weekday of that date
    """
    if isinstance(value, Weekday):
        return value
    if isinstance(value, date):
        return weekday_of(value)
    if isinstance(value, bool):
        raise ValueError(f"invalid weekday: {value!r}")
    if isinstance(value, int):
        if value == 7:
            return Weekday.SUNDAY
        if 0 <= value <= 6:
            return Weekday(value)
        raise ValueError(f"weekday out of range: {value!r}")
    text = str(value).strip().lower()
    if text.isdigit():
        return canonical_weekday(int(text))
    if text in _DAY_ALIASES:
        return _DAY_ALIASES[text]
    raise ValueError(f"unrecognised weekday: {value!r}")


def canonical_weekdays(values: Optional[Iterable[Any]]) -> List[Weekday]:
    """Canonicalize, de-duplicate and sort a weekday collection."""
    if values is None:
        return []
    if isinstance(values, (str, int, date)):
        values = [values]
    return sorted({canonical_weekday(v) for v in values})
