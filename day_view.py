"""Normalize -> merge -> layout for a user's aggregate."""

from datetime import date
from typing import List, Optional

from merge_engine import merge_contiguous
from models import DayView, NormalizeOptions, ScheduleAggregate
from normalizer import collect_raw_blocks, normalize_for_date, normalize_range
from overlap_layout import layout_day


def build_day_view(
    target_date: date,
    aggregate: ScheduleAggregate,
    options: Optional[NormalizeOptions] = None,
) -> DayView:
    normalized = normalize_for_date(target_date, collect_raw_blocks(aggregate), options)
    merged = merge_contiguous(normalized)
    return DayView(day=target_date, blocks=merged, segments=layout_day(merged))


def build_range_view(
    start_date: date,
    end_date: date,
    aggregate: ScheduleAggregate,
    options: Optional[NormalizeOptions] = None,
) -> List[DayView]:
    views = []
    for day, normalized in normalize_range(start_date, end_date, collect_raw_blocks(aggregate), options).items():
        merged = merge_contiguous(normalized)
        views.append(DayView(day=day, blocks=merged, segments=layout_day(merged)))
    return views
