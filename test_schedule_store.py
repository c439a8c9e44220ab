import json

import pytest

from errors import StaleAggregateError
from models import BlockCategory, ScheduleAggregate, TimeBlock
from schedule_fixer import make_fixed
from schedule_store import ScheduleStore
from time_model import Weekday


@pytest.fixture
def store(tmp_path):
    return ScheduleStore(str(tmp_path))


def _aggregate():
    math = TimeBlock(title="Math", category=BlockCategory.CLASS, start_time="18:00", end_time="19:00", days=[Weekday.MONDAY])
    english = TimeBlock(title="English", category=BlockCategory.CLASS, start_time="16:00", end_time="17:00", days=[Weekday.MONDAY])
    return ScheduleAggregate(
        personal_times=[TimeBlock(title="Sleep", category=BlockCategory.PERSONAL, start_time="23:00", end_time="07:00")],
        fixed_schedules=[make_fixed(math)],
        arrangement=[english],
    )


def test_unknown_user_gets_empty_aggregate(store):
    aggregate = store.get_schedule_aggregate("nobody")
    assert aggregate.user_id == "nobody"
    assert aggregate.version == 0
    assert aggregate.fixed_schedules == []


def test_round_trip_keeps_fixed_source(store):
    written = store.put_schedule_aggregate("u1", _aggregate())
    loaded = store.get_schedule_aggregate("u1")

    assert written.version == 1
    assert loaded.version == 1
    assert loaded.fixed_schedules[0].title == "Math"
    assert loaded.fixed_schedules[0].source.id == written.fixed_schedules[0].source.id
    assert [b.title for b in loaded.arrangement] == ["English"]
    assert loaded.personal_times[0].end_time == "07:00"


def test_file_is_readable_json(store, tmp_path):
    store.put_schedule_aggregate("u1", _aggregate())
    with open(tmp_path / "schedule_u1.json", encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["version"] == 1
    assert raw["fixed_schedules"][0]["source"]["title"] == "Math"


def test_every_write_bumps_the_version(store):
    store.put_schedule_aggregate("u1", _aggregate())
    second = store.put_schedule_aggregate("u1", _aggregate(), expected_version=1)
    assert second.version == 2
    assert store.get_schedule_aggregate("u1").version == 2


def test_stale_write_is_rejected(store):
    store.put_schedule_aggregate("u1", _aggregate())
    store.put_schedule_aggregate("u1", _aggregate())

    with pytest.raises(StaleAggregateError) as info:
        store.put_schedule_aggregate("u1", ScheduleAggregate(), expected_version=1)
    assert info.value.actual == 2
    assert store.get_schedule_aggregate("u1").fixed_schedules[0].title == "Math"


def test_lock_is_shared_per_user(store):
    assert store.lock_for("u1") is store.lock_for("u1")
    assert store.lock_for("u1") is not store.lock_for("u2")
