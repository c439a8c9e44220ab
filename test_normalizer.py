import logging
from datetime import date, datetime, timezone

from models import BlockCategory, FixedSchedule, NormalizeOptions, TimeBlock
from normalizer import aggregate_from_records, ingest_block, normalize_for_date, normalize_range
from time_model import Weekday

MONDAY = date(2026, 3, 2)
TUESDAY = date(2026, 3, 3)


def test_midnight_crossing_block_is_split_with_same_identity():
    sleep = TimeBlock(title="Sleep", category=BlockCategory.PERSONAL, start_time="18:00", end_time="08:00")
    out = normalize_for_date(MONDAY, [sleep])

    assert [(b.start_time, b.end_time) for b in out] == [("00:00", "08:00"), ("18:00", "24:00")]
    assert out[0].identity_key() == out[1].identity_key() == sleep.identity_key()
    assert all(b.start_min < b.end_min for b in out)


def test_block_ending_exactly_at_midnight_does_not_emit_empty_half():
    late = TimeBlock(title="Study", start_time="22:00", end_time="00:00")
    out = normalize_for_date(MONDAY, [late])
    assert [(b.start_time, b.end_time) for b in out] == [("22:00", "24:00")]


def test_matching_rules_for_weekday_specific_date_and_everyday():
    weekly = TimeBlock(title="Gym", start_time="07:00", end_time="08:00", days=[Weekday.MONDAY])
    one_off = TimeBlock(title="Dentist", start_time="09:00", end_time="10:00", specific_date=TUESDAY)
    everyday = TimeBlock(title="Lunch", start_time="12:00", end_time="13:00")

    monday = [b.title for b in normalize_for_date(MONDAY, [weekly, one_off, everyday])]
    tuesday = [b.title for b in normalize_for_date(TUESDAY, [weekly, one_off, everyday])]

    assert monday == ["Gym", "Lunch"]
    assert tuesday == ["Dentist", "Lunch"]


def test_specific_date_never_matches_by_weekday():
    # 2026-03-09 is also a Monday
    one_off = TimeBlock(title="Exam", start_time="09:00", end_time="11:00", specific_date=MONDAY)
    assert normalize_for_date(date(2026, 3, 9), [one_off]) == []


def test_rest_filter_hides_late_personal_blocks_only():
    sleep = TimeBlock(title="Sleep", category=BlockCategory.PERSONAL, start_time="23:00", end_time="07:00")
    nap = TimeBlock(title="Nap", category=BlockCategory.PERSONAL, start_time="14:00", end_time="15:00")
    late_class = TimeBlock(title="Night class", category=BlockCategory.CLASS, start_time="22:30", end_time="23:30")

    hidden = normalize_for_date(MONDAY, [sleep, nap, late_class], NormalizeOptions(include_low_priority_rest=False))
    shown = normalize_for_date(MONDAY, [sleep, nap, late_class], NormalizeOptions(include_low_priority_rest=True))

    assert [b.title for b in hidden] == ["Nap", "Night class"]
    assert [b.title for b in shown] == ["Sleep", "Nap", "Night class", "Sleep"]


def test_rest_threshold_is_configurable():
    reading = TimeBlock(title="Reading", category=BlockCategory.PERSONAL, start_time="21:00", end_time="22:00")
    options = NormalizeOptions(include_low_priority_rest=False, late_hour_threshold="21:00")
    assert normalize_for_date(MONDAY, [reading], options) == []


def test_ties_ordered_by_category_rank():
    preferred = TimeBlock(title="Free", category=BlockCategory.PREFERRED, start_time="09:00", end_time="10:00")
    exception = TimeBlock(title="Moved", category=BlockCategory.EXCEPTION, start_time="09:00", end_time="10:00")
    pinned = TimeBlock(title="Math", category=BlockCategory.PINNED_CLASS, start_time="09:00", end_time="10:00")

    out = normalize_for_date(MONDAY, [preferred, exception, pinned])
    assert [b.category for b in out] == [
        BlockCategory.PINNED_CLASS, BlockCategory.EXCEPTION, BlockCategory.PREFERRED,
    ]


def test_malformed_records_are_dropped_and_logged(caplog):
    raws = [
        {"title": "No end", "startTime": "09:00"},
        {"title": "Garbage", "startTime": "9am", "endTime": "10am"},
        {"title": "Fine", "startTime": "10:00", "endTime": "11:00", "days": [1]},
    ]
    with caplog.at_level(logging.WARNING, logger="normalizer"):
        out = normalize_for_date(MONDAY, raws)

    assert [b.title for b in out] == ["Fine"]
    assert caplog.text.count("MALFORMED_BLOCK") == 2


def test_stored_record_shapes_are_ingested():
    block = ingest_block({
        "title": "KPOP",
        "instructor": "린아T",
        "startTime": "2026-03-02T17:10:00.000Z",
        "endTime": "18:00",
        "days": ["월", 7],
        "legendKey": "academy-1",
    }, BlockCategory.CLASS)

    assert block.secondary_tag == "린아T"
    assert block.start_time == datetime(2026, 3, 2, 17, 10, tzinfo=timezone.utc).astimezone().strftime("%H:%M")
    assert block.days == [Weekday.SUNDAY, Weekday.MONDAY]
    assert block.category == BlockCategory.CLASS
    assert block.legend_key == "academy-1"


def test_is_recurring_decides_between_date_and_days():
    specific = ingest_block({
        "title": "Trip", "startTime": "09:00", "endTime": "10:00",
        "days": [2], "specificDate": "2026-03-03", "isRecurring": False,
    })
    recurring = ingest_block({
        "title": "Club", "startTime": "09:00", "endTime": "10:00",
        "days": [2], "specificDate": "2026-03-03",
    })

    assert specific.specific_date == TUESDAY and specific.days == []
    assert recurring.specific_date is None and recurring.days == [Weekday.TUESDAY]


def test_fixed_entry_without_source_gets_placeholder():
    fixed = ingest_block(
        {"title": "Piano", "startTime": "18:00", "endTime": "19:00", "days": [1]},
        BlockCategory.PINNED_CLASS,
        FixedSchedule,
    )
    assert isinstance(fixed, FixedSchedule)
    assert fixed.source.id == fixed.id
    assert fixed.source.title == "Piano"
    assert fixed.user_fixed is True


def test_aggregate_from_camel_case_document():
    aggregate = aggregate_from_records("u1", {
        "defaultSchedule": [{"title": "Free", "startTime": "09:00", "endTime": "12:00", "days": [1, 2]}],
        "personalTimes": [{"title": "Sleep", "startTime": "23:00", "endTime": "07:00"}],
        "scheduleExceptions": [{"title": "Off", "startTime": "2026-03-02T09:00:00", "endTime": "2026-03-02T10:00:00",
                                "specificDate": "2026-03-02"}],
        "fixedSchedules": [{"title": "Piano", "startTime": "18:00", "endTime": "19:00", "days": [1]}],
        "version": 3,
    })

    assert aggregate.version == 3
    assert aggregate.personal_times[0].category == BlockCategory.PERSONAL
    assert aggregate.schedule_exceptions[0].category == BlockCategory.EXCEPTION
    assert aggregate.fixed_schedules[0].category == BlockCategory.PINNED_CLASS


def test_normalize_range_is_inclusive():
    gym = TimeBlock(title="Gym", start_time="07:00", end_time="08:00", days=[Weekday.MONDAY, Weekday.WEDNESDAY])
    days = normalize_range(MONDAY, date(2026, 3, 4), [gym])

    assert list(days) == [MONDAY, TUESDAY, date(2026, 3, 4)]
    assert [len(v) for v in days.values()] == [1, 0, 1]
