"""
optimizer.py
------------
Optimizer boundary for reoptimization after the fixed set changes.

Any object with `async optimize(candidates, fixed) -> List[TimeBlock]` can be
handed to FixedScheduleResolver. The returned blocks are taken as the new
non-fixed arrangement; the resolver strips anything that is itself fixed.
"""

from __future__ import annotations

import logging
from typing import List, Protocol, Sequence

import config
from models import FixedSchedule, TimeBlock
from schedule_fixer import has_time_conflict

logger = logging.getLogger(__name__)


class Optimizer(Protocol):
    async def optimize(
        self,
        candidates: Sequence[TimeBlock],
        fixed: Sequence[FixedSchedule],
    ) -> List[TimeBlock]:
        ...


def arrangement_order(block: TimeBlock):
    return (tuple(int(d) for d in block.days), block.specific_date is not None, block.start_min, block.end_min, block.title)


class FilterOptimizer:
    """
    Deterministic fallback: keep every candidate that clashes with no fixed
    block, one copy per (title, tag, time, days), in a stable order.
    """

    async def optimize(
        self,
        candidates: Sequence[TimeBlock],
        fixed: Sequence[FixedSchedule],
    ) -> List[TimeBlock]:
        kept: List[TimeBlock] = []
        seen = set()
        dropped = 0
        for candidate in candidates:
            key = candidate.structural_key()
            if key in seen:
                continue
            seen.add(key)
            if any(has_time_conflict(f, candidate) for f in fixed):
                dropped += 1
                continue
            kept.append(candidate)

        logger.debug("filter optimizer kept %d, dropped %d conflicting", len(kept), dropped)
        return sorted(kept, key=arrangement_order)


def build_optimizer():
    """Gemini when an API key is configured, the conflict filter otherwise."""
    if config.GEMINI_API_KEY:
        from llm_engine import LLMOptimizer
        return LLMOptimizer(api_key=config.GEMINI_API_KEY, model=config.GEMINI_MODEL)
    logger.info("GEMINI_API_KEY not set; using the deterministic filter optimizer")
    return FilterOptimizer()
