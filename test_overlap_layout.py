from fractions import Fraction

from models import TimeBlock
from overlap_layout import block_boundaries, layout_day
from time_model import to_minutes


def _block(title, start, end):
    return TimeBlock(title=title, start_time=start, end_time=end)


def _widths_at(segments, minute):
    return sum((s.width for s in segments if s.start_min <= minute < s.end_min), Fraction(0))


def test_empty_day_has_no_segments():
    assert layout_day([]) == []


def test_lone_block_is_one_full_width_segment():
    segments = layout_day([_block("Solo", "09:00", "10:00")])

    assert len(segments) == 1
    assert segments[0].column_count == 1
    assert segments[0].width == 1
    assert segments[0].is_primary


def test_c_d_boundaries_and_overlap_count():
    c = _block("C", "09:00", "10:00")
    d = _block("D", "09:30", "10:30")
    segments = layout_day([c, d])

    points = sorted({s.start_min for s in segments} | {s.end_min for s in segments})
    assert points == [to_minutes(t) for t in ("09:00", "09:30", "10:00", "10:30")]

    middle = [s for s in segments if (s.start_time, s.end_time) == ("09:30", "10:00")]
    assert [s.column_count for s in middle] == [2, 2]
    assert sorted(s.column_index for s in middle) == [0, 1]

    assert block_boundaries(0, [c, d]) == [540, 570, 600]
    assert block_boundaries(1, [c, d]) == [570, 600, 630]


def test_widths_sum_to_one_at_every_covered_instant():
    blocks = [
        _block("A", "08:00", "12:00"),
        _block("B", "09:00", "10:00"),
        _block("C", "09:30", "11:00"),
        _block("D", "10:30", "13:00"),
        _block("E", "12:00", "12:30"),
    ]
    segments = layout_day(blocks)

    for minute in range(to_minutes("08:00"), to_minutes("13:00")):
        assert _widths_at(segments, minute) == 1, minute


def test_columns_follow_input_order():
    first = _block("First", "09:00", "10:00")
    second = _block("Second", "09:00", "10:00")
    segments = layout_day([first, second])

    assert [(s.block.title, s.column_index, s.left) for s in segments] == [
        ("First", 0, Fraction(0)),
        ("Second", 1, Fraction(1, 2)),
    ]


def test_primary_is_longest_fragment_earliest_on_tie():
    long_block = _block("Long", "09:00", "12:00")
    blocker = _block("Blocker", "10:00", "10:30")
    segments = layout_day([long_block, blocker])

    own = [s for s in segments if s.block_index == 0]
    assert [(s.start_time, s.end_time) for s in own] == [("09:00", "10:00"), ("10:00", "10:30"), ("10:30", "12:00")]
    assert [s.is_primary for s in own] == [False, False, True]

    tied = layout_day([_block("Tie", "09:00", "11:00"), _block("Next", "10:00", "12:00")])
    tie_own = [s for s in tied if s.block_index == 0]
    assert [s.is_primary for s in tie_own] == [True, False]


def test_every_block_has_exactly_one_primary_segment():
    blocks = [_block("A", "08:00", "12:00"), _block("B", "09:00", "10:00"), _block("C", "09:30", "11:00")]
    segments = layout_day(blocks)
    for index in range(len(blocks)):
        assert sum(1 for s in segments if s.block_index == index and s.is_primary) == 1
