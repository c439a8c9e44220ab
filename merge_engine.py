"""
merge_engine.py
---------------
Joins back-to-back blocks of the same identity into one displayable unit.

A merge is refused when a block of a different identity overlaps the span the
merge would create, so a real clash stays visible as two separate blocks.
Input is one day's normalized list; output is MergedBlock only.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import List, Sequence, Tuple

from models import MergedBlock, TimeBlock
from normalizer import sort_key


def _sources_of(block: TimeBlock) -> List[TimeBlock]:
    if isinstance(block, MergedBlock) and block.sources:
        return list(block.sources)
    return [block]


def _wrap(block: TimeBlock) -> MergedBlock:
    fields = {name: getattr(block, name) for name in TimeBlock.model_fields}
    return MergedBlock(**fields, sources=_sources_of(block))


def _guard_blocks(
    everything: Sequence[TimeBlock],
    identity: Tuple,
    start_min: int,
    end_min: int,
) -> bool:
    """True when a different-identity block strictly overlaps (start_min, end_min)."""
    for other in everything:
        if other.identity_key() == identity:
            continue
        if other.start_min < end_min and other.end_min > start_min:
            return True
    return False


def merge_contiguous(blocks: Sequence[TimeBlock]) -> List[MergedBlock]:
    """
    Group by identity, walk each group in start order, and extend the running
    block while the next one starts exactly where it ends and no foreign block
    overlaps the extended span. Idempotent on its own output.
    """
    groups: "OrderedDict[Tuple, List[TimeBlock]]" = OrderedDict()
    for block in blocks:
        groups.setdefault(block.identity_key(), []).append(block)

    merged: List[MergedBlock] = []
    for identity, group in groups.items():
        group = sorted(group, key=lambda b: b.start_min)
        running = _wrap(group[0])

        for block in group[1:]:
            contiguous = running.end_min == block.start_min
            if contiguous and not _guard_blocks(blocks, identity, running.start_min, block.end_min):
                running = running.model_copy(update={
                    "end_time": block.end_time,
                    "sources": running.sources + _sources_of(block),
                })
                continue
            merged.append(running)
            running = _wrap(block)

        merged.append(running)

    merged.sort(key=sort_key)
    return merged
