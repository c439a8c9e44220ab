"""
normalizer.py
-------------
Turns a user's heterogeneous block records into an ordered per-day list.

Responsibilities:
  1. Ingest raw records (pydantic models or plain dicts in either the stored
     camelCase shape or snake_case) into TimeBlock / FixedSchedule.
     Records without a usable start/end are dropped as MALFORMED_BLOCK.
  2. Select the blocks that apply to a given date.
  3. Apply the late-hour rest filter (display only, never deletes).
  4. Split midnight-crossing blocks into [start, 24:00] + [00:00, end].
  5. Order by start, ties by category rank (fixed first).

Pure functions, no I/O.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from errors import ErrorKind
from models import (
    BlockCategory,
    FixedSchedule,
    NormalizeOptions,
    ScheduleAggregate,
    TimeBlock,
)
from time_model import DAY_END, DAY_START, MINUTES_PER_DAY, to_minutes, weekday_of

logger = logging.getLogger(__name__)


CATEGORY_RANK = {
    BlockCategory.PINNED_CLASS: 0,
    BlockCategory.CUSTOM_FIXED: 0,
    BlockCategory.EXCEPTION: 1,
    BlockCategory.PERSONAL: 2,
    BlockCategory.PREFERRED: 3,
    BlockCategory.EXTERNAL_CALENDAR: 4,
    BlockCategory.CLASS: 5,
}

# stored-record key -> model field
_KEY_ALIASES = {
    "startTime": "start_time",
    "endTime": "end_time",
    "specificDate": "specific_date",
    "instructor": "secondary_tag",
    "secondaryTag": "secondary_tag",
    "legendKey": "legend_key",
    "type": "category",
    "originalTitle": "original_title",
    "originalSchedule": "source",
    "sourceRef": "source",
    "_id": "id",
}

# aggregate collection -> default category of its records
AGGREGATE_COLLECTIONS = (
    ("fixed_schedules", BlockCategory.PINNED_CLASS),
    ("schedule_exceptions", BlockCategory.EXCEPTION),
    ("personal_times", BlockCategory.PERSONAL),
    ("default_schedule", BlockCategory.PREFERRED),
)


def sort_key(block: TimeBlock):
    return (block.start_min, CATEGORY_RANK.get(block.category, len(CATEGORY_RANK)))


# ── ingestion ─────────────────────────────────────────────────────────────────

def _as_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if "T" in text:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)


def _record_fields(raw: Dict[str, Any], default_category: BlockCategory) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key, value in raw.items():
        fields[_KEY_ALIASES.get(key, key)] = value

    if fields.get("category") in (None, ""):
        fields["category"] = default_category
    if fields.get("id") is None:
        fields.pop("id", None)
    else:
        fields["id"] = str(fields["id"])

    # Stored records sometimes carry both a date and a weekday list;
    # isRecurring decides which one is authoritative.
    recurring = fields.pop("isRecurring", fields.pop("is_recurring", None))
    if fields.get("specific_date") not in (None, "") and fields.get("days"):
        if recurring is False:
            fields["days"] = []
        else:
            fields["specific_date"] = None
    if fields.get("specific_date") in (None, ""):
        fields["specific_date"] = None
    else:
        fields["specific_date"] = _as_date(fields["specific_date"])
    if fields.get("days") is None:
        fields["days"] = []
    return fields


def ingest_block(
    raw: Any,
    default_category: BlockCategory = BlockCategory.PREFERRED,
    model: Type[TimeBlock] = TimeBlock,
) -> Optional[TimeBlock]:
    """
    Convert one raw record into `model`.

    Returns None (and logs MALFORMED_BLOCK) when the record has no usable
    start/end time or otherwise fails validation.
    """
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        logger.warning("%s: unsupported record type %s", ErrorKind.MALFORMED_BLOCK.value, type(raw).__name__)
        return None

    try:
        fields = _record_fields(raw, default_category)
        if fields.get("start_time") in (None, "") or fields.get("end_time") in (None, ""):
            raise ValueError("missing start_time/end_time")
        if model is FixedSchedule:
            fields.setdefault("id", uuid4().hex)
            source = fields.get("source")
            if isinstance(source, dict):
                source = ingest_block(source, BlockCategory.CLASS)
            if source is None:
                # no stored back-reference: synthesize a placeholder from the entry itself
                placeholder = {k: v for k, v in fields.items() if k in TimeBlock.model_fields}
                placeholder["category"] = BlockCategory.CLASS
                source = TimeBlock.model_validate(placeholder)
            fields["source"] = source
            fields = {k: v for k, v in fields.items() if k in FixedSchedule.model_fields}
        else:
            fields = {k: v for k, v in fields.items() if k in model.model_fields}
        return model.model_validate(fields)
    except (ValidationError, ValueError, TypeError) as exc:
        logger.warning(
            "%s: dropping %r (%s)",
            ErrorKind.MALFORMED_BLOCK.value,
            raw.get("title", "<untitled>"),
            exc,
        )
        return None


def ingest_blocks(
    raws: Optional[Iterable[Any]],
    default_category: BlockCategory = BlockCategory.PREFERRED,
    model: Type[TimeBlock] = TimeBlock,
) -> List[TimeBlock]:
    blocks = []
    for raw in raws or []:
        block = ingest_block(raw, default_category, model)
        if block is not None:
            blocks.append(block)
    return blocks


def aggregate_from_records(user_id: str, raw: Optional[Dict[str, Any]]) -> ScheduleAggregate:
    """Build an aggregate from a stored document, dropping malformed entries."""
    raw = raw or {}

    def pick(*names):
        for name in names:
            if raw.get(name) is not None:
                return raw[name]
        return []

    return ScheduleAggregate(
        user_id=user_id,
        default_schedule=ingest_blocks(pick("default_schedule", "defaultSchedule"), BlockCategory.PREFERRED),
        schedule_exceptions=ingest_blocks(pick("schedule_exceptions", "scheduleExceptions"), BlockCategory.EXCEPTION),
        personal_times=ingest_blocks(pick("personal_times", "personalTimes"), BlockCategory.PERSONAL),
        fixed_schedules=ingest_blocks(
            pick("fixed_schedules", "fixedSchedules"), BlockCategory.PINNED_CLASS, FixedSchedule
        ),
        arrangement=ingest_blocks(pick("arrangement", "currentSchedule"), BlockCategory.CLASS),
        version=int(raw.get("version", 0) or 0),
    )


def collect_raw_blocks(aggregate: ScheduleAggregate) -> List[TimeBlock]:
    """Every displayable block of an aggregate, fixed entries first."""
    blocks: List[TimeBlock] = []
    for name, _category in AGGREGATE_COLLECTIONS:
        blocks.extend(getattr(aggregate, name))
    blocks.extend(aggregate.arrangement)
    return blocks


# ── per-date selection ────────────────────────────────────────────────────────

def applies_on(block: TimeBlock, target: date) -> bool:
    if block.specific_date is not None:
        return block.specific_date == target
    if block.days:
        return weekday_of(target) in block.days
    return True


def split_at_midnight(block: TimeBlock) -> List[TimeBlock]:
    """[start, end) with end <= start -> [start, 24:00] + [00:00, end]; empty halves omitted."""
    if not block.crosses_midnight:
        return [block]
    halves = []
    if block.start_min < MINUTES_PER_DAY:
        halves.append(block.model_copy(update={"end_time": DAY_END}))
    if block.end_min > 0:
        halves.append(block.model_copy(update={"start_time": DAY_START}))
    return halves


def _is_suppressed_rest(block: TimeBlock, options: NormalizeOptions) -> bool:
    if options.include_low_priority_rest or block.category != BlockCategory.PERSONAL:
        return False
    return block.start_min >= to_minutes(options.late_hour_threshold)


def normalize_for_date(
    target_date: date,
    raw_blocks: Iterable[Any],
    options: Optional[NormalizeOptions] = None,
) -> List[TimeBlock]:
    """
    Parameters
    ----------
    target_date : the calendar day being displayed.
    raw_blocks  : TimeBlock instances and/or raw dict records from any collection.
    options     : rest-filter settings; defaults to NormalizeOptions().

    Returns
    -------
    The blocks active on target_date, each with start < end, ordered by start
    then category rank.
    """
    options = options or NormalizeOptions()
    result: List[TimeBlock] = []

    for raw in raw_blocks:
        block = raw if isinstance(raw, TimeBlock) else ingest_block(raw)
        if block is None:
            continue
        if not applies_on(block, target_date):
            continue
        if _is_suppressed_rest(block, options):
            continue
        result.extend(split_at_midnight(block))

    result.sort(key=sort_key)
    return result


def normalize_range(
    start_date: date,
    end_date: date,
    raw_blocks: Iterable[Any],
    options: Optional[NormalizeOptions] = None,
) -> Dict[date, List[TimeBlock]]:
    """normalize_for_date for every day of [start_date, end_date]."""
    # ingest once so malformed records are reported once, not per day
    blocks = [b for b in (r if isinstance(r, TimeBlock) else ingest_block(r) for r in raw_blocks) if b is not None]
    days: Dict[date, List[TimeBlock]] = {}
    current = start_date
    while current <= end_date:
        days[current] = normalize_for_date(current, blocks, options)
        current += timedelta(days=1)
    return days
