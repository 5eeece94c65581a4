from datetime import datetime

import pytest

import irrigator
from irrigator import EventKind, Schedule, ValveMode, WateringMethod


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


@pytest.fixture
def farm():
    clock = irrigator.ManualClock(datetime(2024, 5, 1, 10, 0))
    store = irrigator.InMemoryFieldStore([
        irrigator.Field("1", "North Field", 2.5, "Tomatoes"),
        irrigator.Field("2", "South Field", 4.2, "Wheat",
                        individual_schedule=Schedule.parse("09:00", "11:00")),
    ])
    logs = irrigator.InMemoryWateringLogStore()
    sink = RecordingSink()
    engine = irrigator.SchedulingEngine(
        store, irrigator.WateringLogRecorder(logs), sink=sink, clock=clock,
    )
    return engine, clock, store, logs, sink


def test_manual_on_then_off_records_actual_duration(farm):
    engine, clock, store, logs, sink = farm

    field = engine.request_manual_valve("1", "on")
    assert field.valve_mode is ValveMode.ON
    assert field.last_watered == datetime(2024, 5, 1, 10, 0)
    entry = logs.list_by_field("1")[0]
    assert entry.method is WateringMethod.MANUAL
    assert entry.duration == 30

    clock.advance(minutes=10)
    field = engine.request_manual_valve("1", ValveMode.OFF)
    assert field.valve_mode is ValveMode.OFF
    entries = logs.list_by_field("1")
    assert len(entries) == 1
    assert entries[0].end_time == datetime(2024, 5, 1, 10, 10)
    assert entries[0].duration == 10
    assert [e.kind for e in sink.events] == [EventKind.VALVE_CHANGED] * 2


def test_manual_auto_records_auto_session(farm):
    engine, clock, store, logs, sink = farm
    engine.request_manual_valve("1", "AUTO")
    assert logs.list_by_field("1")[0].method is WateringMethod.AUTO
    assert store.list_fields()[0].valve_mode is ValveMode.AUTO


def test_repeating_current_mode_is_a_noop(farm):
    engine, clock, store, logs, sink = farm
    field = engine.request_manual_valve("1", "off")
    assert field.valve_mode is ValveMode.OFF
    assert logs.list_by_field("1") == []
    assert sink.events == []


def test_active_individual_schedule_blocks_manual_control(farm):
    engine, clock, store, logs, sink = farm
    with pytest.raises(irrigator.ScheduleConflict) as exc:
        engine.request_manual_valve("2", "on")
    assert "South Field" in str(exc.value)
    assert "global" not in str(exc.value)
    assert store.list_fields()[1].valve_mode is ValveMode.OFF
    assert sink.events[-1].kind is EventKind.MANUAL_CONTROL_REJECTED
    assert sink.events[-1].severity == "warning"


def test_active_global_schedule_blocks_fields_without_their_own(farm):
    engine, clock, store, logs, sink = farm
    clock.set(datetime(2024, 5, 1, 21, 30))
    engine.set_schedule(None, Schedule.parse("21:00", "23:00"))

    with pytest.raises(irrigator.ScheduleConflict) as exc:
        engine.request_manual_valve("1", "off")
    assert str(exc.value) == (
        "Cannot control valve for North Field: governed by active global schedule 21:00-23:00"
    )
    # field 2 follows its own (inactive) schedule
    assert engine.request_manual_valve("2", "on").valve_mode is ValveMode.ON


def test_cancelling_the_schedule_frees_manual_control(farm):
    engine, clock, store, logs, sink = farm
    engine.evaluate_tick()
    with pytest.raises(irrigator.ScheduleConflict):
        engine.request_manual_valve("2", "off")

    clock.advance(minutes=15)
    events = engine.cancel_schedule("2")
    assert [e.kind for e in events] == [EventKind.SCHEDULE_DISENGAGED]
    assert not store.list_fields()[1].individual_schedule.enabled

    field = engine.request_manual_valve("2", "off")
    assert field.valve_mode is ValveMode.OFF
    assert logs.list_by_field("2")[0].end_time == datetime(2024, 5, 1, 10, 15)


def test_unknown_field_and_bad_mode(farm):
    engine, clock, store, logs, sink = farm
    with pytest.raises(irrigator.FieldNotFound):
        engine.request_manual_valve("99", "on")
    with pytest.raises(ValueError):
        engine.request_manual_valve("1", "flood")
