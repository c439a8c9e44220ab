"""
schedule_fixer.py
-----------------
Lifecycle of user-pinned (fixed) blocks.

Responsibilities:
  1. Detect conflicts between fixed blocks. Two blocks conflict when they share
     a day and their minute ranges overlap; midnight-crossing blocks contribute
     both halves. The relation is symmetric.
  2. Apply the caller's resolution policy (keep_new / keep_existing / keep_both).
  3. Rebuild the optimizer's candidate pool from each fixed entry's source
     record plus the current arrangement.
  4. Reoptimize transactionally: all mutation happens on a deep copy of the
     aggregate and is returned only when the optimizer call succeeds in time.
  5. Report legend keys that no remaining block references.

The resolver does not lock anything. Callers serialize requests per user
(ScheduleStore.lock_for) and write the returned aggregate back themselves.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date
from itertools import product
from typing import Iterable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

import config
from candidate_search import find_candidate, find_fixed_entries
from day_view import build_day_view
from errors import ErrorKind, MalformedRequestError
from models import (
    BlockCategory,
    ConflictPolicy,
    FixedSchedule,
    IntentKind,
    NewSchedule,
    NormalizeOptions,
    ResolverOutcome,
    ScheduleAggregate,
    ScheduleIntent,
    SearchResult,
    SearchStatus,
    TimeBlock,
)
from normalizer import collect_raw_blocks
from time_model import MINUTES_PER_DAY, add_minutes, duration_between, overlaps, weekday_of

logger = logging.getLogger(__name__)

_CUSTOM_SUFFIX = re.compile(r"\s*(약속|일정|시간|appointment|meeting)$", re.IGNORECASE)


# ── conflict primitives ───────────────────────────────────────────────────────

def block_intervals(block: TimeBlock) -> List[Tuple[int, int]]:
    """Minute ranges a block occupies within its day; a midnight crosser yields two."""
    if not block.crosses_midnight:
        return [(block.start_min, block.end_min)]
    halves = []
    if block.start_min < MINUTES_PER_DAY:
        halves.append((block.start_min, MINUTES_PER_DAY))
    if block.end_min > 0:
        halves.append((0, block.end_min))
    return halves


def days_intersect(a: TimeBlock, b: TimeBlock) -> bool:
    if (not a.days and a.specific_date is None) or (not b.days and b.specific_date is None):
        return True
    if a.specific_date is not None and b.specific_date is not None:
        return a.specific_date == b.specific_date
    if a.specific_date is not None:
        return weekday_of(a.specific_date) in b.days
    if b.specific_date is not None:
        return weekday_of(b.specific_date) in a.days
    return bool(set(a.days) & set(b.days))


def has_time_conflict(a: TimeBlock, b: TimeBlock) -> bool:
    if not days_intersect(a, b):
        return False
    return any(overlaps(s1, e1, s2, e2) for (s1, e1), (s2, e2) in product(block_intervals(a), block_intervals(b)))


def find_fixed_conflicts(new_fixed: TimeBlock, existing_fixed: Sequence[FixedSchedule]) -> List[FixedSchedule]:
    """Existing entries that clash with new_fixed; an entry never clashes with itself."""
    return [e for e in existing_fixed if e.id != new_fixed.id and has_time_conflict(new_fixed, e)]


def apply_conflict_policy(
    new_fixed: FixedSchedule,
    conflicting: Sequence[FixedSchedule],
    existing: Sequence[FixedSchedule],
    policy: ConflictPolicy,
) -> Tuple[List[FixedSchedule], List[FixedSchedule]]:
    """Returns (new fixed set, evicted entries)."""
    if policy == ConflictPolicy.KEEP_NEW:
        evicted_ids = {c.id for c in conflicting}
        kept = [e for e in existing if e.id not in evicted_ids]
        return kept + [new_fixed], [e for e in existing if e.id in evicted_ids]
    if policy == ConflictPolicy.KEEP_EXISTING:
        return list(existing), []
    if policy == ConflictPolicy.KEEP_BOTH:
        return list(existing) + [new_fixed], []
    raise MalformedRequestError(f"unknown conflict policy: {policy!r}")


# ── candidate pool / arrangement bookkeeping ──────────────────────────────────

def _is_placeholder(entry: FixedSchedule) -> bool:
    return entry.source.id == entry.id


def source_of(entry: FixedSchedule, candidate_pool: Sequence[TimeBlock]) -> TimeBlock:
    """The candidate an entry was pinned from, recovered structurally when no real reference was stored."""
    if not _is_placeholder(entry):
        return entry.source
    wanted = (entry.source.title, entry.source.start_time, entry.source.end_time)
    for candidate in candidate_pool:
        if (candidate.title, candidate.start_time, candidate.end_time) == wanted:
            return candidate
    return entry.source


def returns_to_pool(entry: FixedSchedule, candidate_pool: Sequence[TimeBlock]) -> bool:
    """False for entries that never came from a candidate (custom entries, unmatched placeholders)."""
    if entry.category == BlockCategory.CUSTOM_FIXED:
        return False
    return not _is_placeholder(entry) or source_of(entry, candidate_pool) is not entry.source


def _dedupe(blocks: Iterable[TimeBlock]) -> List[TimeBlock]:
    seen_ids, seen_keys = set(), set()
    unique = []
    for block in blocks:
        key = block.structural_key()
        if block.id in seen_ids or key in seen_keys:
            continue
        seen_ids.add(block.id)
        seen_keys.add(key)
        unique.append(block)
    return unique


def reconstruct_candidate_pool(
    fixed_set: Sequence[FixedSchedule],
    candidate_pool: Sequence[TimeBlock],
    arrangement: Sequence[TimeBlock],
) -> List[TimeBlock]:
    """Sources of every fixed entry, then the current arrangement, then the rest of the pool."""
    sources = [source_of(entry, candidate_pool) for entry in fixed_set]
    return _dedupe([*sources, *arrangement, *candidate_pool])


def is_structurally_fixed(block: TimeBlock, fixed_set: Sequence[FixedSchedule]) -> bool:
    for entry in fixed_set:
        if block.id in (entry.id, entry.source.id):
            return True
        if block.structural_key() in (entry.structural_key(), entry.source.structural_key()):
            return True
    return False


def removed_legend_keys(before: Iterable[TimeBlock], after: Iterable[TimeBlock]) -> List[str]:
    """Legend keys referenced before but by no block after, in first-seen order."""
    remaining = {b.legend_key for b in after if b.legend_key}
    removed: List[str] = []
    for block in before:
        key = block.legend_key
        if key and key not in remaining and key not in removed:
            removed.append(key)
    return removed


# ── fixed-entry construction ──────────────────────────────────────────────────

def make_fixed(candidate: TimeBlock) -> FixedSchedule:
    return FixedSchedule(
        title=candidate.title,
        secondary_tag=candidate.secondary_tag,
        category=BlockCategory.PINNED_CLASS,
        start_time=candidate.start_time,
        end_time=candidate.end_time,
        days=list(candidate.days),
        specific_date=candidate.specific_date,
        legend_key=candidate.legend_key,
        color=candidate.color,
        source=candidate,
    )


def custom_base_title(title: str) -> str:
    """'Dentist appointment' -> 'Dentist', '병원 약속' -> '병원'."""
    base = _CUSTOM_SUFFIX.sub("", title.strip())
    return base or title.strip()


def make_custom_fixed(title: str, new_schedule: NewSchedule) -> FixedSchedule:
    base = custom_base_title(title)
    entry_id = uuid4().hex
    placeholder = TimeBlock(
        id=entry_id,
        title=base,
        category=BlockCategory.CUSTOM_FIXED,
        start_time=new_schedule.start_time,
        end_time=new_schedule.end_time,
        days=list(new_schedule.days),
        legend_key=base,
    )
    return FixedSchedule(
        id=entry_id,
        title=base,
        original_title=title,
        category=BlockCategory.CUSTOM_FIXED,
        start_time=new_schedule.start_time,
        end_time=new_schedule.end_time,
        days=list(new_schedule.days),
        legend_key=base,
        source=placeholder,
    )


def find_duplicate(new_fixed: FixedSchedule, existing: Sequence[FixedSchedule]) -> Optional[FixedSchedule]:
    for entry in existing:
        if entry.category == new_fixed.category and entry.structural_key() == new_fixed.structural_key():
            return entry
    return None


# ── user-facing text ──────────────────────────────────────────────────────────

def describe(block: TimeBlock) -> str:
    if block.specific_date is not None:
        when = block.specific_date.isoformat()
    elif block.days:
        when = ",".join(d.name[:3].title() for d in block.days)
    else:
        when = "daily"
    tag = f" ({block.secondary_tag})" if block.secondary_tag else ""
    return f"{block.title}{tag} {when} {block.start_time}-{block.end_time}"


def _numbered(options: Sequence[TimeBlock]) -> str:
    return "\n".join(f"{i}. {describe(b)}" for i, b in enumerate(options, start=1))


# ── resolver ──────────────────────────────────────────────────────────────────

class FixedScheduleResolver:
    """Runs pin / modify / remove / list / add_custom against one aggregate."""

    def __init__(
        self,
        optimizer,
        timeout: float = config.OPTIMIZER_TIMEOUT_SECONDS,
        options: Optional[NormalizeOptions] = None,
    ):
        self.optimizer = optimizer
        self.timeout = timeout
        self.options = options or NormalizeOptions()

    async def handle(
        self,
        intent: ScheduleIntent,
        aggregate: ScheduleAggregate,
        candidate_pool: Sequence[TimeBlock] = (),
        display_date: Optional[date] = None,
    ) -> ResolverOutcome:
        kind = intent.intent
        if kind == IntentKind.LIST:
            return self._list(intent, aggregate, display_date)

        if kind in (IntentKind.PIN, IntentKind.MODIFY, IntentKind.REMOVE):
            if not (intent.query.subject_token or "").strip():
                raise MalformedRequestError(f"{kind.value} requires query.subject_token")
        if kind in (IntentKind.MODIFY, IntentKind.ADD_CUSTOM) and intent.new_schedule is None:
            raise MalformedRequestError(f"{kind.value} requires new_schedule")

        candidate_pool = list(candidate_pool)
        if kind == IntentKind.PIN:
            return await self._pin(intent, aggregate, candidate_pool, display_date)
        if kind == IntentKind.MODIFY:
            return await self._modify(intent, aggregate, candidate_pool, display_date)
        if kind == IntentKind.REMOVE:
            return await self._remove(intent, aggregate, candidate_pool, display_date)
        return await self._add_custom(intent, aggregate, candidate_pool, display_date)

    async def select_option(
        self,
        intent: ScheduleIntent,
        option_number: int,
        aggregate: ScheduleAggregate,
        candidate_pool: Sequence[TimeBlock] = (),
        display_date: Optional[date] = None,
    ) -> ResolverOutcome:
        """Re-run an AMBIGUOUS request with the caller's 1-based choice."""
        chosen = intent.model_copy(update={"option_number": option_number})
        return await self.handle(chosen, aggregate, candidate_pool, display_date)

    async def resolve_conflict(
        self,
        pending: FixedSchedule,
        policy: Union[ConflictPolicy, str],
        aggregate: ScheduleAggregate,
        candidate_pool: Sequence[TimeBlock] = (),
        display_date: Optional[date] = None,
    ) -> ResolverOutcome:
        """Apply the policy chosen after a CONFLICT outcome to its pending entry."""
        try:
            policy = ConflictPolicy(policy)
        except ValueError:
            raise MalformedRequestError(f"unknown conflict policy: {policy!r}") from None

        replacing = next((f for f in aggregate.fixed_schedules if f.id == pending.id), None)
        if replacing is not None:
            kind, action = IntentKind.MODIFY, "modify"
        elif pending.category == BlockCategory.CUSTOM_FIXED:
            kind, action = IntentKind.ADD_CUSTOM, "add"
        else:
            kind, action = IntentKind.PIN, "add"
        intent = ScheduleIntent(intent=kind, conflict_policy=policy)
        return await self._insert(
            intent, pending, aggregate, list(candidate_pool), display_date, action, replacing=replacing
        )

    # ── intents ──

    def _list(self, intent, aggregate, display_date) -> ResolverOutcome:
        fixed = list(aggregate.fixed_schedules)
        message = f"{len(fixed)} fixed schedule(s)." + ("\n" + _numbered(fixed) if fixed else "")
        outcome = ResolverOutcome(
            success=True,
            intent=intent.intent,
            action="list",
            message=message,
            options=fixed,
            aggregate=aggregate,
            arrangement=aggregate.arrangement,
        )
        if display_date is not None:
            outcome.segments = build_day_view(display_date, aggregate, self.options).segments
        return outcome

    async def _pin(self, intent, aggregate, pool, display_date) -> ResolverOutcome:
        result = find_candidate(pool, intent.query, intent.option_number)
        if result.status != SearchStatus.MATCHED:
            return self._search_outcome(intent, result, "add")

        new_fixed = make_fixed(result.match)
        duplicate = find_duplicate(new_fixed, aggregate.fixed_schedules)
        if duplicate is not None:
            return ResolverOutcome(
                success=False,
                intent=intent.intent,
                action="add",
                error=ErrorKind.ALREADY_PINNED,
                message=f"'{describe(duplicate)}' is already fixed.",
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )
        return await self._insert(intent, new_fixed, aggregate, pool, display_date, "add")

    async def _add_custom(self, intent, aggregate, pool, display_date) -> ResolverOutcome:
        new_schedule = intent.new_schedule
        title = (new_schedule.title or intent.query.subject_token or "").strip()
        if not title:
            raise MalformedRequestError("add_custom requires a title")
        if new_schedule.end_time is None:
            raise MalformedRequestError("add_custom requires new_schedule.end_time")
        try:
            new_fixed = make_custom_fixed(title, new_schedule)
        except ValueError as exc:
            raise MalformedRequestError(str(exc)) from exc

        duplicate = find_duplicate(new_fixed, aggregate.fixed_schedules)
        if duplicate is not None:
            return ResolverOutcome(
                success=False,
                intent=intent.intent,
                action="add",
                error=ErrorKind.ALREADY_PINNED,
                message=f"'{describe(duplicate)}' is already fixed.",
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )
        return await self._insert(intent, new_fixed, aggregate, pool, display_date, "add")

    async def _modify(self, intent, aggregate, pool, display_date) -> ResolverOutcome:
        result = find_fixed_entries(aggregate.fixed_schedules, intent.query, intent.option_number)
        if result.status != SearchStatus.MATCHED:
            return self._search_outcome(intent, result, "modify")

        target: FixedSchedule = result.match
        new_schedule = intent.new_schedule
        end_time = new_schedule.end_time or add_minutes(
            new_schedule.start_time, duration_between(target.start_time, target.end_time)
        )
        fields = target.model_dump()
        fields.update(start_time=new_schedule.start_time, end_time=end_time)
        if new_schedule.days:
            fields.update(days=list(new_schedule.days), specific_date=None)
        try:
            updated = FixedSchedule.model_validate(fields)
        except ValueError as exc:
            raise MalformedRequestError(str(exc)) from exc

        return await self._insert(intent, updated, aggregate, pool, display_date, "modify", replacing=target)

    async def _remove(self, intent, aggregate, pool, display_date) -> ResolverOutcome:
        result = find_fixed_entries(aggregate.fixed_schedules, intent.query, intent.option_number)
        if result.status != SearchStatus.MATCHED:
            return self._search_outcome(intent, result, "remove")

        target = result.match
        fixed_set = [f for f in aggregate.fixed_schedules if f.id != target.id]
        return await self._commit(
            intent, "remove", aggregate, fixed_set, pool, display_date,
            message=f"Removed '{describe(target)}' from fixed schedules.",
        )

    # ── shared steps ──

    async def _insert(
        self,
        intent: ScheduleIntent,
        new_fixed: FixedSchedule,
        aggregate: ScheduleAggregate,
        pool: List[TimeBlock],
        display_date: Optional[date],
        action: str,
        replacing: Optional[FixedSchedule] = None,
    ) -> ResolverOutcome:
        if replacing is None:
            others = list(aggregate.fixed_schedules)
        else:
            others = [f for f in aggregate.fixed_schedules if f.id != replacing.id]
        conflicts = find_fixed_conflicts(new_fixed, others)
        policy = intent.conflict_policy

        if conflicts and policy is None:
            listed = ", ".join(describe(c) for c in conflicts)
            return ResolverOutcome(
                success=False,
                intent=intent.intent,
                action=action,
                error=ErrorKind.CONFLICT,
                message=(
                    f"'{describe(new_fixed)}' overlaps {listed}. "
                    "Choose keep_new, keep_existing or keep_both."
                ),
                conflicts=conflicts,
                pending_fixed=new_fixed,
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )

        if conflicts and policy == ConflictPolicy.KEEP_EXISTING:
            return ResolverOutcome(
                success=True,
                intent=intent.intent,
                action=action,
                message=f"Kept the existing fixed schedules; '{new_fixed.title}' was not fixed.",
                conflicts=conflicts,
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )

        if conflicts:
            fixed_set, evicted = apply_conflict_policy(new_fixed, conflicts, others, policy)
        elif replacing is not None:
            fixed_set = [new_fixed if f.id == replacing.id else f for f in aggregate.fixed_schedules]
            evicted = []
        else:
            fixed_set, evicted = others + [new_fixed], []

        verb = "Updated" if action == "modify" else "Fixed"
        message = f"{verb} '{describe(new_fixed)}'."
        if evicted:
            message += " Released: " + ", ".join(describe(e) for e in evicted) + "."
        return await self._commit(
            intent, action, aggregate, fixed_set, pool, display_date,
            message=message, evicted=evicted, conflicts=conflicts,
        )

    async def _commit(
        self,
        intent: ScheduleIntent,
        action: str,
        aggregate: ScheduleAggregate,
        fixed_set: List[FixedSchedule],
        pool: List[TimeBlock],
        display_date: Optional[date],
        message: str,
        evicted: Sequence[FixedSchedule] = (),
        conflicts: Sequence[FixedSchedule] = (),
    ) -> ResolverOutcome:
        working = aggregate.model_copy(deep=True)
        previous_fixed = working.fixed_schedules
        working.fixed_schedules = [f.model_copy(deep=True) for f in fixed_set]

        # sources of released entries go back into the pool; custom entries just disappear
        released = [f for f in previous_fixed if returns_to_pool(f, pool)]
        candidates = reconstruct_candidate_pool(
            released + working.fixed_schedules, pool, working.arrangement
        )

        try:
            arranged = await asyncio.wait_for(
                self.optimizer.optimize(candidates, working.fixed_schedules),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("optimizer timed out after %ss for user %s", self.timeout, aggregate.user_id)
            return ResolverOutcome(
                success=False,
                intent=intent.intent,
                action=action,
                error=ErrorKind.OPTIMIZER_TIMEOUT,
                message="Rebuilding the timetable took too long; fixed schedules were not changed.",
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )
        except Exception:
            logger.exception("optimizer failed for user %s", aggregate.user_id)
            return ResolverOutcome(
                success=False,
                intent=intent.intent,
                action=action,
                error=ErrorKind.OPTIMIZER_FAILURE,
                message="Rebuilding the timetable failed; fixed schedules were not changed.",
                aggregate=aggregate,
                arrangement=aggregate.arrangement,
            )

        working.arrangement = [b for b in arranged if not is_structurally_fixed(b, working.fixed_schedules)]
        removed = removed_legend_keys(collect_raw_blocks(aggregate), collect_raw_blocks(working))

        logger.info(
            "user %s %s: %d fixed, %d arranged, %d evicted",
            aggregate.user_id, action, len(working.fixed_schedules), len(working.arrangement), len(evicted),
        )

        outcome = ResolverOutcome(
            success=True,
            intent=intent.intent,
            action=action,
            message=message,
            conflicts=list(conflicts),
            evicted=list(evicted),
            aggregate=working,
            arrangement=working.arrangement,
            removed_legend_keys=removed,
        )
        if display_date is not None:
            outcome.segments = build_day_view(display_date, working, self.options).segments
        return outcome

    def _search_outcome(self, intent: ScheduleIntent, result: SearchResult, action: str) -> ResolverOutcome:
        subject = intent.query.subject_token or ""
        if result.status == SearchStatus.AMBIGUOUS:
            error = ErrorKind.AMBIGUOUS
            message = f"Several schedules match '{subject}'. Reply with a number:\n{_numbered(result.options)}"
        elif result.status == SearchStatus.INDEX_OUT_OF_RANGE:
            error = ErrorKind.INDEX_OUT_OF_RANGE
            message = f"Pick a number between 1 and {len(result.options)}."
        else:
            error = ErrorKind.NOT_FOUND
            where = "the uploaded timetable" if intent.intent == IntentKind.PIN else "your fixed schedules"
            message = f"Nothing matching '{subject}' was found in {where}."
        return ResolverOutcome(
            success=False,
            intent=intent.intent,
            action=action,
            error=error,
            message=message,
            options=result.options,
        )
