from datetime import datetime, timedelta

import pytest

import irrigator
from irrigator import WateringMethod

T0 = datetime(2024, 5, 1, 6, 0)


class StuckLogStore(irrigator.InMemoryWateringLogStore):
    def close(self, entry_id, end_time):
        raise irrigator.PersistenceFailure("backend timeout")


def test_entry_requires_positive_duration():
    with pytest.raises(ValueError):
        irrigator.WateringLogEntry("1", T0, T0, WateringMethod.MANUAL)
    entry = irrigator.WateringLogEntry("1", T0, T0 + timedelta(minutes=45, seconds=20),
                                       WateringMethod.MANUAL)
    assert entry.duration == 45
    assert entry.as_dict()["method"] == "manual"


def test_start_session_defaults_and_clamps():
    recorder = irrigator.WateringLogRecorder(irrigator.InMemoryWateringLogStore(), 30)
    entry = recorder.start_session("1", WateringMethod.MANUAL, T0)
    assert entry.end_time == T0 + timedelta(minutes=30)
    assert entry.id is not None

    short = recorder.start_session("2", WateringMethod.SCHEDULED, T0, end=T0)
    assert short.end_time == T0 + timedelta(minutes=1)


def test_new_session_closes_the_previous_one():
    store = irrigator.InMemoryWateringLogStore()
    recorder = irrigator.WateringLogRecorder(store)
    recorder.start_session("1", WateringMethod.MANUAL, T0)
    recorder.start_session("1", WateringMethod.AUTO, T0 + timedelta(minutes=5))

    newest, first = recorder.history("1")
    assert newest.method is WateringMethod.AUTO
    assert first.end_time == T0 + timedelta(minutes=5)
    assert recorder.open_session("1") == newest


def test_close_session_clamps_to_one_minute():
    recorder = irrigator.WateringLogRecorder(irrigator.InMemoryWateringLogStore())
    recorder.start_session("1", WateringMethod.MANUAL, T0)
    closed = recorder.close_session("1", T0)
    assert closed.duration == 1
    assert recorder.close_session("1", T0) is None


def test_close_failure_keeps_session_open():
    recorder = irrigator.WateringLogRecorder(StuckLogStore())
    entry = recorder.start_session("1", WateringMethod.MANUAL, T0)
    with pytest.raises(irrigator.PersistenceFailure):
        recorder.close_session("1", T0 + timedelta(minutes=10))
    assert recorder.open_session("1") == entry


def test_history_is_newest_first_and_per_field():
    store = irrigator.InMemoryWateringLogStore()
    recorder = irrigator.WateringLogRecorder(store)
    for hours in (0, 2, 1):
        recorder.record("1", T0 + timedelta(hours=hours), T0 + timedelta(hours=hours, minutes=20),
                        WateringMethod.SCHEDULED)
    recorder.record("2", T0, T0 + timedelta(minutes=5), WateringMethod.AUTO)

    starts = [e.start_time.hour for e in recorder.history("1")]
    assert starts == [8, 7, 6]
    assert len(recorder.history("2")) == 1
