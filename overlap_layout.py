"""
overlap_layout.py
-----------------
Column layout for one day's blocks.

Each block is cut at every other block's start/end that falls inside it.
For every resulting sub-interval the covering set is the list of blocks whose
span contains it (input order); the block's position in that list is its
column and the list's length is the column count. Width 1/count and offset
index/count then tile every instant exactly.
"""

from __future__ import annotations

from typing import List, Sequence

from models import Segment, TimeBlock


def block_boundaries(index: int, blocks: Sequence[TimeBlock]) -> List[int]:
    """Sorted cut points of blocks[index]: its own start/end plus inner boundaries of others."""
    block = blocks[index]
    start, end = block.start_min, block.end_min
    points = {start, end}
    for other in blocks:
        for point in (other.start_min, other.end_min):
            if start < point < end:
                points.add(point)
    return sorted(points)


def covering_set(blocks: Sequence[TimeBlock], a: int, b: int) -> List[int]:
    """Indices of blocks whose span fully contains [a, b), in input order."""
    return [i for i, blk in enumerate(blocks) if blk.start_min <= a and blk.end_min >= b]


def layout_day(blocks: Sequence[TimeBlock]) -> List[Segment]:
    segments: List[Segment] = []

    for index, block in enumerate(blocks):
        points = block_boundaries(index, blocks)
        own: List[Segment] = []
        for a, b in zip(points, points[1:]):
            covering = covering_set(blocks, a, b)
            own.append(Segment(
                block=block,
                block_index=index,
                start_min=a,
                end_min=b,
                column_index=covering.index(index),
                column_count=len(covering),
            ))

        if own:
            # longest fragment carries the label; earliest wins a tie
            primary = max(own, key=lambda s: (s.duration, -s.start_min))
            primary.is_primary = True
        segments.extend(own)

    return segments
