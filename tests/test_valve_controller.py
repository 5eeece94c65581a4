import pytest

import irrigator
from irrigator import ScheduleDecision, ValveMode, WateringMethod


def test_manual_request_blocked_while_governed():
    sched = irrigator.Schedule.parse("21:00", "23:00")
    valve = irrigator.ValveController("1", ValveMode.OFF, name="North Field")
    with pytest.raises(irrigator.ScheduleConflict) as exc:
        valve.request_manual(ValveMode.ON, True, sched, is_global=True)
    assert str(exc.value) == (
        "Cannot control valve for North Field: governed by active global schedule 21:00-23:00"
    )
    assert exc.value.field_id == "1"
    assert valve.mode is ValveMode.OFF


def test_manual_request_same_mode_is_noop():
    valve = irrigator.ValveController("1", ValveMode.AUTO)
    assert valve.request_manual(ValveMode.AUTO, False) is None


def test_manual_transitions_carry_method():
    valve = irrigator.ValveController("1")
    on = valve.request_manual(ValveMode.ON, False)
    assert on.method is WateringMethod.MANUAL
    assert on.previous is ValveMode.OFF
    assert on.opens_session

    auto = valve.request_manual(ValveMode.AUTO, False)
    assert auto.method is WateringMethod.AUTO

    # proposals do not change state until committed
    assert valve.mode is ValveMode.OFF
    valve.commit(on)
    assert valve.mode is ValveMode.ON
    off = valve.request_manual(ValveMode.OFF, False)
    assert not off.opens_session


def test_engage_and_disengage_follow_default_policy():
    valve = irrigator.ValveController("1")
    t = valve.apply_schedule(ScheduleDecision.ENGAGE)
    assert (t.mode, t.method) == (ValveMode.AUTO, WateringMethod.SCHEDULED)
    valve.commit(t)
    assert valve.apply_schedule(ScheduleDecision.ENGAGE) is None
    assert valve.apply_schedule(ScheduleDecision.DISENGAGE) is None


def test_policy_on_then_off():
    policy = irrigator.SchedulePolicy(engage_mode="on", disengage_mode="off")
    valve = irrigator.ValveController("1", policy=policy)
    valve.commit(valve.apply_schedule(ScheduleDecision.ENGAGE))
    assert valve.mode is ValveMode.ON
    t = valve.apply_schedule(ScheduleDecision.DISENGAGE)
    assert t.mode is ValveMode.OFF
    assert not t.opens_session


def test_policy_rejects_nonsense_modes():
    with pytest.raises(ValueError):
        irrigator.SchedulePolicy(engage_mode="off")
    with pytest.raises(ValueError):
        irrigator.SchedulePolicy(disengage_mode="on")
    policy = irrigator.SchedulePolicy.from_config({"policy": {"disengage_mode": "off"}})
    assert policy.disengage_mode is ValveMode.OFF
    assert policy.engage_mode is ValveMode.AUTO
