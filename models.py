from pydantic import BaseModel, Field, computed_field, field_validator, model_validator
from typing import Any, Dict, List, Optional, Tuple
from datetime import date
from enum import Enum
from fractions import Fraction
from uuid import uuid4

import config
from errors import ErrorKind
from time_model import (
    MINUTES_PER_DAY,
    Weekday,
    canonical_time,
    canonical_weekday,
    canonical_weekdays,
    to_hhmm,
    to_minutes,
)

MAX_PRIORITY = 2**31 - 1


class BlockCategory(str, Enum):
    PREFERRED = "preferred"
    EXCEPTION = "exception"
    PERSONAL = "personal"
    PINNED_CLASS = "pinned_class"
    CUSTOM_FIXED = "custom_fixed"
    EXTERNAL_CALENDAR = "external_calendar"
    CLASS = "class"                 # uploaded-timetable candidate / arranged entry


FIXED_CATEGORIES = frozenset({BlockCategory.PINNED_CLASS, BlockCategory.CUSTOM_FIXED})


# ── Time blocks ──────────────────────────────────────────────────────

class TimeBlock(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str
    secondary_tag: Optional[str] = None      # actor qualifier, e.g. instructor
    category: BlockCategory = BlockCategory.PREFERRED
    start_time: str                          # "09:00"
    end_time: str                            # "10:00"; "24:00" allowed
    days: List[Weekday] = Field(default_factory=list)
    specific_date: Optional[date] = None
    priority: int = 1
    legend_key: Optional[str] = None
    color: Optional[str] = None              # presentation hint only

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return canonical_time(v)

    @field_validator("start_time")
    @classmethod
    def check_start(cls, v: str) -> str:
        if to_minutes(v) >= MINUTES_PER_DAY:
            raise ValueError("start_time must be before 24:00")
        return v

    @field_validator("days", mode="before")
    @classmethod
    def parse_days(cls, v):
        return canonical_weekdays(v)

    @model_validator(mode="after")
    def check_recurrence(self):
        if self.days and self.specific_date is not None:
            raise ValueError("a block is either weekday-recurring or date-specific, not both")
        return self

    @property
    def start_min(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_min(self) -> int:
        return to_minutes(self.end_time)

    @property
    def crosses_midnight(self) -> bool:
        return self.end_min <= self.start_min

    def identity_key(self) -> Tuple:
        """Blocks merge only when every field of this key is equal."""
        return (self.title, self.secondary_tag or "", self.category.value, self.legend_key or "")

    def structural_key(self) -> Tuple:
        """Identity of the underlying record regardless of generated id."""
        return (
            self.title,
            self.secondary_tag or "",
            self.start_time,
            self.end_time,
            tuple(int(d) for d in self.days),
            self.specific_date,
        )


class MergedBlock(TimeBlock):
    """Display-only union of contiguous same-identity blocks. Never persisted."""
    sources: List[TimeBlock] = Field(default_factory=list)


class FixedSchedule(TimeBlock):
    category: BlockCategory = BlockCategory.PINNED_CLASS
    priority: int = MAX_PRIORITY
    user_fixed: bool = True
    source: TimeBlock                        # candidate it was pinned from, or a placeholder
    original_title: Optional[str] = None

    @model_validator(mode="after")
    def force_max_priority(self):
        self.priority = MAX_PRIORITY
        return self


class Segment(BaseModel):
    block: TimeBlock
    block_index: int                         # position of block in the laid-out list
    start_min: int
    end_min: int
    column_index: int
    column_count: int
    is_primary: bool = False

    @computed_field
    @property
    def start_time(self) -> str:
        return to_hhmm(self.start_min)

    @computed_field
    @property
    def end_time(self) -> str:
        return to_hhmm(self.end_min)

    @property
    def duration(self) -> int:
        return self.end_min - self.start_min

    @property
    def width(self) -> Fraction:
        return Fraction(1, self.column_count)

    @property
    def left(self) -> Fraction:
        return Fraction(self.column_index, self.column_count)


# ── Aggregate / views ────────────────────────────────────────────────

class ScheduleAggregate(BaseModel):
    """Everything one user owns; read-modify-written as a whole."""
    user_id: str = ""
    default_schedule: List[TimeBlock] = Field(default_factory=list)
    schedule_exceptions: List[TimeBlock] = Field(default_factory=list)
    personal_times: List[TimeBlock] = Field(default_factory=list)
    fixed_schedules: List[FixedSchedule] = Field(default_factory=list)
    arrangement: List[TimeBlock] = Field(default_factory=list)
    version: int = 0


class NormalizeOptions(BaseModel):
    include_low_priority_rest: bool = True
    late_hour_threshold: str = Field(default_factory=lambda: config.LATE_HOUR_THRESHOLD)

    @field_validator("late_hour_threshold", mode="before")
    @classmethod
    def parse_threshold(cls, v):
        return canonical_time(v)


class DayView(BaseModel):
    day: date
    blocks: List[MergedBlock]
    segments: List[Segment]


# ── Intents (supplied by the external parser) ─────────────────────────

class IntentKind(str, Enum):
    PIN = "pin"
    MODIFY = "modify"
    REMOVE = "remove"
    LIST = "list"
    ADD_CUSTOM = "add_custom"


class ConflictPolicy(str, Enum):
    KEEP_NEW = "keep_new"
    KEEP_EXISTING = "keep_existing"
    KEEP_BOTH = "keep_both"


class PinQuery(BaseModel):
    subject_token: Optional[str] = None
    actor_token: Optional[str] = None
    time_hint: Optional[str] = None          # "17:10"
    day_hint: Optional[Weekday] = None

    @field_validator("time_hint", mode="before")
    @classmethod
    def parse_hint(cls, v):
        return None if v in (None, "") else canonical_time(v)

    @field_validator("day_hint", mode="before")
    @classmethod
    def parse_day(cls, v):
        return None if v in (None, "") else canonical_weekday(v)


class NewSchedule(BaseModel):
    title: Optional[str] = None              # add_custom only
    days: List[Weekday] = Field(default_factory=list)
    start_time: str
    end_time: Optional[str] = None           # modify keeps the old duration when omitted

    @field_validator("start_time", mode="before")
    @classmethod
    def parse_start(cls, v):
        return canonical_time(v)

    @field_validator("end_time", mode="before")
    @classmethod
    def parse_end(cls, v):
        return None if v in (None, "") else canonical_time(v)

    @field_validator("days", mode="before")
    @classmethod
    def parse_days(cls, v):
        return canonical_weekdays(v)


class ScheduleIntent(BaseModel):
    intent: IntentKind
    query: PinQuery = Field(default_factory=PinQuery)
    new_schedule: Optional[NewSchedule] = None
    option_number: Optional[int] = Field(None, description="1-based pick from a previous option list")
    conflict_policy: Optional[ConflictPolicy] = None


# ── Search / resolver results ─────────────────────────────────────────

class SearchStatus(str, Enum):
    MATCHED = "MATCHED"
    AMBIGUOUS = "AMBIGUOUS"
    NOT_FOUND = "NOT_FOUND"
    INDEX_OUT_OF_RANGE = "INDEX_OUT_OF_RANGE"


class SearchResult(BaseModel):
    status: SearchStatus
    match: Optional[TimeBlock] = None
    options: List[TimeBlock] = Field(default_factory=list)


class ResolverOutcome(BaseModel):
    """Envelope returned for every fixed-schedule request."""
    success: bool
    intent: IntentKind
    action: Optional[str] = None             # add | modify | remove | list
    error: Optional[ErrorKind] = None
    message: str = ""
    options: List[TimeBlock] = Field(default_factory=list)
    conflicts: List[FixedSchedule] = Field(default_factory=list)
    pending_fixed: Optional[FixedSchedule] = None
    evicted: List[FixedSchedule] = Field(default_factory=list)
    aggregate: Optional[ScheduleAggregate] = None
    arrangement: List[TimeBlock] = Field(default_factory=list)
    removed_legend_keys: List[str] = Field(default_factory=list)
    segments: List[Segment] = Field(default_factory=list)


# ── Request bodies ────────────────────────────────────────────────────

class ViewRequest(BaseModel):
    start_date: date
    end_date: Optional[date] = None          # inclusive; defaults to start_date
    options: NormalizeOptions = Field(default_factory=NormalizeOptions)


class FixedIntentRequest(BaseModel):
    intent: ScheduleIntent
    candidate_pool: List[Dict[str, Any]] = Field(default_factory=list)   # uploaded timetable entries
    display_date: Optional[date] = None


class SelectOptionRequest(FixedIntentRequest):
    option_number: int


class ResolveConflictRequest(BaseModel):
    pending_fixed: FixedSchedule
    policy: ConflictPolicy
    candidate_pool: List[Dict[str, Any]] = Field(default_factory=list)
    display_date: Optional[date] = None
