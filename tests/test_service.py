import datetime as _dt

import pytest

from capital_controls.config import RiskConfigProvider, RiskConfiguration
from capital_controls.exceptions import (CapitalControlBlockedError,
                                         OverrideValidationError,
                                         StoreUnavailableError)
from capital_controls.models import (ActionKey, Actor, BreachEventType,
                                     ControlMode, OverrideStatus, Reservation,
                                     ReservationState)
from capital_controls.overrides import OverrideRequest
from capital_controls.service import CapitalControlService, expire_reservations
from capital_controls.store import (InMemoryBreachEventStore,
                                    SqlBreachEventStore, SqlOverrideStore)
from conftest import NOW, make_state


@pytest.fixture()
def service(breach_store, override_store, audit):
    return CapitalControlService(breach_store, override_store, audit=audit, clock=lambda: NOW)


def _reservation(expires_at=None) -> Reservation:
    return Reservation(
        id="R1",
        listing_id="L1",
        weight_oz=1000,
        price_per_oz_locked=2400,
        state=ReservationState.ACTIVE,
        expires_at=expires_at,
    )


def _throttled_state(**kw):
    """Reservation-driven CAUTION: HU 84%, reservation is the top driver."""
    return make_state(capital_base=10_000_000, hardstop_limit=1_000_000, reservations=[_reservation(**kw)])


def _override_request(**kw) -> OverrideRequest:
    data = dict(
        scope="ACTION",
        action_key="CREATE_RESERVATION",
        reason="Desk approved additional reservation headroom",
        expires_at=NOW + _dt.timedelta(hours=1),
        actor_role="treasury",
        actor_user_id="u1",
    )
    data.update(kw)
    return OverrideRequest(**data)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


def test_sweep_at_98_percent_freezes_marketplace(service, breach_store, audit_sink):
    result = service.run_sweep(make_state(open_settlement=49_000_000))

    assert result.decision.mode is ControlMode.FREEZE_MARKETPLACE
    assert [e.type for e in result.new_events] == [BreachEventType.HARDSTOP_BREACH]
    assert result.history_available is True
    assert len(breach_store.list_events()) == 1
    assert [r.action for r in audit_sink.records] == ["CAPITAL_BREACH_DETECTED"]


def test_repeat_sweep_in_same_minute_adds_nothing(service, breach_store):
    state = make_state(open_settlement=49_000_000)
    service.run_sweep(state)
    again = service.run_sweep(make_state(open_settlement=49_000_000, now=NOW.replace(second=50)))

    assert again.new_events == ()
    assert again.decision.mode is ControlMode.FREEZE_MARKETPLACE
    assert len(breach_store.list_events()) == 1


def test_negative_buffer_sweep_escalates_to_halt(service):
    state = make_state(capital_base=1_000_000, hardstop_limit=100_000_000, tvar99=2_000_000, open_settlement=100_000)
    result = service.run_sweep(state)

    assert [e.type for e in result.new_events] == [BreachEventType.BUFFER_NEGATIVE]
    assert result.decision.mode is ControlMode.EMERGENCY_HALT


class _DownBreachStore(InMemoryBreachEventStore):
    def has(self, event_id):
        raise StoreUnavailableError("db down")

    def list_events(self, since=None):
        raise StoreUnavailableError("db down")


def test_storage_outage_degrades_to_snapshot_only(override_store, audit):
    service = CapitalControlService(_DownBreachStore(), override_store, audit=audit)
    state = make_state(capital_base=1_000_000, hardstop_limit=100_000_000, tvar99=2_000_000, open_settlement=100_000)

    result = service.run_sweep(state)

    assert result.history_available is False
    assert result.new_events == ()
    assert result.decision.mode is ControlMode.NORMAL


def test_evaluation_failure_fails_closed(service, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("snapshot inputs corrupt")

    monkeypatch.setattr("capital_controls.service.compute_snapshot", boom)
    decision, ok = service.safe_decision(make_state())

    assert ok is False
    assert decision.mode is ControlMode.EMERGENCY_HALT
    assert decision.snapshot_hash == ""
    assert "snapshot inputs corrupt" in decision.reasons[0]
    with pytest.raises(CapitalControlBlockedError):
        service.check_action(ActionKey.OPEN_SETTLEMENT, make_state())


def test_override_refused_while_failing_closed(service, override_store, audit_sink, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("snapshot inputs corrupt")

    monkeypatch.setattr("capital_controls.service.compute_snapshot", boom)

    with pytest.raises(OverrideValidationError, match="Decision unavailable") as excinfo:
        service.create_override(_override_request(action_key="EXECUTE_DVP"), make_state())

    assert len(excinfo.value.errors) == 1
    assert override_store.list_overrides() == []
    assert not [r for r in audit_sink.records if r.action == "CAPITAL_OVERRIDE_CREATED"]


def test_overflowing_snapshot_fails_closed(service):
    state = make_state(capital_base=1e-300, hardstop_limit=1e-300, open_settlement=1e10)

    decision, ok = service.safe_decision(state)

    assert ok is False
    assert decision.mode is ControlMode.EMERGENCY_HALT
    assert "not finite" in decision.reasons[0]


def test_config_provider_is_consulted(breach_store, override_store):
    relaxed = RiskConfiguration(hardstop_breach_util=0.99)
    service = CapitalControlService(breach_store, override_store, config=RiskConfigProvider(base=relaxed))

    result = service.run_sweep(make_state(open_settlement=49_000_000))

    assert service.config is relaxed
    assert result.decision.mode is ControlMode.FREEZE_CONVERSIONS


# ---------------------------------------------------------------------------
# Action gate
# ---------------------------------------------------------------------------


def test_check_action_blocks_and_audits(service, audit_sink):
    state = make_state(open_settlement=49_000_000)

    with pytest.raises(CapitalControlBlockedError) as exc:
        service.check_action(ActionKey.PUBLISH_LISTING, state, actor_role="trader", actor_user_id="t1")

    assert exc.value.action_key is ActionKey.PUBLISH_LISTING
    assert exc.value.decision.mode is ControlMode.FREEZE_MARKETPLACE
    blocked = [r for r in audit_sink.records if r.action == "CAPITAL_CONTROL_BLOCKED"]
    assert len(blocked) == 1
    assert blocked[0].actor_user_id == "t1"


def test_check_action_allows_unblocked(service):
    decision = service.check_action(ActionKey.OPEN_SETTLEMENT, make_state(open_settlement=49_000_000))
    assert decision.mode is ControlMode.FREEZE_MARKETPLACE


def test_action_override_unblocks_reservation_under_throttle(service):
    state = _throttled_state()
    with pytest.raises(CapitalControlBlockedError):
        service.check_action(ActionKey.CREATE_RESERVATION, state)

    ov, is_new = service.create_override(_override_request(), state)
    assert is_new is True
    assert ov.mode_at_creation is ControlMode.THROTTLE_RESERVATIONS

    decision = service.check_action(ActionKey.CREATE_RESERVATION, state)
    assert decision.mode is ControlMode.THROTTLE_RESERVATIONS
    assert decision.blocks[ActionKey.CREATE_RESERVATION] is False


def test_override_stops_applying_once_expired(service):
    state = _throttled_state()
    ov, _ = service.create_override(_override_request(), state)

    later = make_state(
        capital_base=10_000_000,
        hardstop_limit=1_000_000,
        reservations=[_reservation()],
        now=ov.expires_at,
    )
    with pytest.raises(CapitalControlBlockedError):
        service.check_action(ActionKey.CREATE_RESERVATION, later)


def test_revoke_and_expire_use_service_clock(service, override_store):
    state = _throttled_state()
    revoked, _ = service.create_override(_override_request(), state)
    expiring, _ = service.create_override(
        _override_request(actor_user_id="u2", expires_at=NOW + _dt.timedelta(minutes=1)), state
    )

    assert service.revoke_override(revoked.id, Actor(role="admin", user_id="a1")).revoked_at == NOW
    assert service.expire_overrides(NOW + _dt.timedelta(minutes=1)) == [
        override_store.get(expiring.id)
    ]
    assert override_store.get(expiring.id).status is OverrideStatus.EXPIRED


def test_sql_backed_service(session_factory, audit):
    service = CapitalControlService(
        SqlBreachEventStore(session_factory), SqlOverrideStore(session_factory), audit=audit
    )
    state = make_state(open_settlement=49_000_000)

    first = service.run_sweep(state)
    second = service.run_sweep(state)

    assert len(first.new_events) == 1
    assert second.new_events == ()


# ---------------------------------------------------------------------------
# Reservation expiry
# ---------------------------------------------------------------------------


def test_lapsed_reservations_treated_as_expired():
    state = _throttled_state(expires_at=NOW)
    expired = expire_reservations(state)

    assert expired.reservations[0].state is ReservationState.EXPIRED
    assert state.reservations[0].state is ReservationState.ACTIVE


def test_unexpired_state_returned_unchanged():
    state = _throttled_state(expires_at=NOW + _dt.timedelta(minutes=5))
    assert expire_reservations(state) is state


def test_lapsed_reservation_releases_throttle(service):
    result = service.run_sweep(_throttled_state(expires_at=NOW - _dt.timedelta(minutes=1)))
    assert result.snapshot.reserved_notional == 0
    assert result.decision.mode is ControlMode.NORMAL
