import datetime as _dt

import pytest

from capital_controls.controls import (BLOCK_MATRIX, apply_overrides,
                                       block_matrix, compute_snapshot_hash,
                                       evaluate_controls,
                                       most_restrictive_decision)
from capital_controls.models import (ActionKey, ActionScope, Actor,
                                     BreachEvent, BreachEventType,
                                     BreachLevel, CapitalOverride, ControlMode,
                                     Driver, EventLevel, GlobalScope,
                                     OverrideStatus)
from capital_controls.snapshot import compute_snapshot
from conftest import NOW, make_snapshot, make_state

A = ActionKey


def _buffer_event(at: _dt.datetime) -> BreachEvent:
    return BreachEvent(
        id="brch-test",
        occurred_at=at,
        type=BreachEventType.BUFFER_NEGATIVE,
        level=EventLevel.WARN,
        message="buffer negative",
        snapshot=make_snapshot(),
    )


def _override(scope, *, expires_in=_dt.timedelta(hours=1), status=OverrideStatus.ACTIVE) -> CapitalOverride:
    return CapitalOverride(
        id="OVR-test",
        scope=scope,
        reason="Treasury approved temporary relief",
        expires_at=NOW + expires_in,
        status=status,
        actor=Actor(role="treasury", user_id="u1"),
        created_at=NOW - _dt.timedelta(minutes=5),
    )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_hardstop_98_percent_freezes_marketplace():
    snap = compute_snapshot(make_state(capital_base=100_000_000, hardstop_limit=50_000_000, open_settlement=49_000_000))
    decision = evaluate_controls(snap, [])

    assert snap.hardstop_utilization == pytest.approx(0.98)
    assert snap.breach_level is BreachLevel.BREACH
    assert decision.mode is ControlMode.FREEZE_MARKETPLACE
    assert decision.blocks[A.PUBLISH_LISTING] is True
    assert decision.blocks[A.OPEN_SETTLEMENT] is False


def test_hardstop_exceeded_is_emergency_halt():
    decision = evaluate_controls(make_snapshot(hu=1.02), [])
    assert decision.mode is ControlMode.EMERGENCY_HALT
    assert all(decision.blocks[k] for k in ActionKey)


def test_ecr_over_freeze_multiple_freezes_conversions():
    snap = make_snapshot(ecr=8.5, hu=0.70, buffer=0.0)
    decision = evaluate_controls(snap, [])

    assert snap.breach_level is BreachLevel.CAUTION
    assert decision.mode is ControlMode.FREEZE_CONVERSIONS
    assert decision.blocks[A.CONVERT_RESERVATION] is True
    assert decision.blocks[A.PUBLISH_LISTING] is False


def test_caution_with_both_freeze_triggers_lists_both():
    decision = evaluate_controls(make_snapshot(ecr=8.5, hu=0.94), [])
    assert decision.mode is ControlMode.FREEZE_CONVERSIONS
    assert len(decision.reasons) == 2


def test_reservation_top_driver_throttles_with_limit():
    drivers = [Driver(label="Reservation R1", value=50.0, id="R1", source="reservation")]
    snap = make_snapshot(hu=0.85, drivers=drivers)
    decision = evaluate_controls(snap, [])

    assert decision.mode is ControlMode.THROTTLE_RESERVATIONS
    assert decision.blocks[A.CREATE_RESERVATION] is True
    assert decision.limits.max_reservation_notional == pytest.approx((100 - 85) * 0.5)
    assert decision.limits.max_reservation_weight_oz is None


def test_high_utilization_throttles():
    decision = evaluate_controls(make_snapshot(hu=0.91), [])
    assert decision.mode is ControlMode.THROTTLE_RESERVATIONS


def test_caution_without_triggers_stays_normal():
    decision = evaluate_controls(make_snapshot(hu=0.82), [])
    assert decision.mode is ControlMode.NORMAL
    assert decision.reasons == (
        "Breach level CAUTION — no specific throttle triggers met. Mode remains NORMAL.",
    )
    assert not any(decision.blocks.values())


def test_clear_is_normal_without_reasons():
    decision = evaluate_controls(make_snapshot(), [])
    assert decision.mode is ControlMode.NORMAL
    assert decision.reasons == ()
    assert decision.limits.max_reservation_notional is None


@pytest.mark.parametrize(
    "age,mode",
    [
        (_dt.timedelta(minutes=0), ControlMode.EMERGENCY_HALT),
        (_dt.timedelta(minutes=30), ControlMode.EMERGENCY_HALT),
        (_dt.timedelta(minutes=60), ControlMode.EMERGENCY_HALT),
        (_dt.timedelta(minutes=61), ControlMode.NORMAL),
    ],
)
def test_recent_buffer_negative_event_halts(age, mode):
    decision = evaluate_controls(make_snapshot(), [_buffer_event(NOW - age)])
    assert decision.mode is mode


def test_other_recent_events_do_not_halt():
    event = _buffer_event(NOW)
    other = BreachEvent(
        id=event.id, occurred_at=NOW, type=BreachEventType.HARDSTOP_CAUTION,
        level=EventLevel.WARN, message="", snapshot=event.snapshot,
    )
    assert evaluate_controls(make_snapshot(), [other]).mode is ControlMode.NORMAL


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("source", ["order", "reservation"])
def test_mode_monotonic_in_hardstop_utilization(source):
    drivers = [Driver(label="x", value=1.0, id="x", source=source)]
    severities = [
        evaluate_controls(make_snapshot(hu=i / 100, drivers=drivers), []).mode.severity
        for i in range(0, 121)
    ]
    assert severities == sorted(severities)
    assert severities[-1] == ControlMode.EMERGENCY_HALT.severity


def test_block_matrices_expand_monotonically():
    modes = sorted(ControlMode, key=lambda m: m.severity)
    for lower, higher in zip(modes, modes[1:]):
        assert BLOCK_MATRIX[lower] <= BLOCK_MATRIX[higher]
    assert BLOCK_MATRIX[ControlMode.NORMAL] == frozenset()
    assert BLOCK_MATRIX[ControlMode.EMERGENCY_HALT] == frozenset(ActionKey)


def test_blocks_cover_every_action_and_are_read_only():
    blocks = block_matrix(ControlMode.THROTTLE_RESERVATIONS)
    assert set(blocks) == set(ActionKey)
    with pytest.raises(TypeError):
        blocks[A.CREATE_RESERVATION] = False  # type: ignore[index]


def test_snapshot_hash_binds_minute_and_ratios():
    base = make_snapshot(hu=0.5)
    same_minute = make_snapshot(hu=0.5, as_of=NOW.replace(second=0))
    moved = make_snapshot(hu=0.51)
    later = make_snapshot(hu=0.5, as_of=NOW + _dt.timedelta(minutes=1))

    h = compute_snapshot_hash(base)
    assert len(h) == 8
    assert h == compute_snapshot_hash(same_minute)
    assert h != compute_snapshot_hash(moved)
    assert h != compute_snapshot_hash(later)
    assert evaluate_controls(base, []).snapshot_hash == h


def test_most_restrictive_decision_blocks_everything():
    decision = most_restrictive_decision(NOW, "boom")
    assert decision.mode is ControlMode.EMERGENCY_HALT
    assert all(decision.is_blocked(k) for k in ActionKey)
    assert "boom" in decision.reasons[0]


# ---------------------------------------------------------------------------
# Overrides applied to the block matrix
# ---------------------------------------------------------------------------


def _throttle_decision():
    drivers = [Driver(label="Reservation R1", value=50.0, id="R1", source="reservation")]
    return evaluate_controls(make_snapshot(hu=0.85, drivers=drivers), [])


def test_action_override_suppresses_only_its_key():
    decision = _throttle_decision()
    effective = apply_overrides(decision, [_override(ActionScope(A.CREATE_RESERVATION))], NOW)

    assert decision.blocks[A.CREATE_RESERVATION] is True
    assert effective.blocks[A.CREATE_RESERVATION] is False
    assert effective.mode is ControlMode.THROTTLE_RESERVATIONS
    assert {k: v for k, v in effective.blocks.items() if k is not A.CREATE_RESERVATION} == {
        k: v for k, v in decision.blocks.items() if k is not A.CREATE_RESERVATION
    }


def test_global_override_downgrades_one_level():
    decision = evaluate_controls(make_snapshot(ecr=8.5, hu=0.7), [])
    effective = apply_overrides(decision, [_override(GlobalScope())], NOW)

    assert decision.mode is ControlMode.FREEZE_CONVERSIONS
    assert dict(effective.blocks) == dict(block_matrix(ControlMode.THROTTLE_RESERVATIONS))


def test_global_override_ignored_in_marketplace_freeze():
    decision = evaluate_controls(make_snapshot(hu=0.97), [])
    effective = apply_overrides(decision, [_override(GlobalScope())], NOW)
    assert dict(effective.blocks) == dict(decision.blocks)


@pytest.mark.parametrize(
    "ov",
    [
        _override(ActionScope(A.CREATE_RESERVATION), expires_in=_dt.timedelta(seconds=0)),
        _override(ActionScope(A.CREATE_RESERVATION), status=OverrideStatus.REVOKED),
    ],
)
def test_inactive_overrides_have_no_effect(ov):
    decision = _throttle_decision()
    assert apply_overrides(decision, [ov], NOW) is decision
