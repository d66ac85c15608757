"""Composition of the capital controls pipeline.

``CapitalControlService`` wires snapshot -> breach sweep -> control decision
-> overrides -> action gate over injected stores. It owns the degradation
rules: configuration and storage outages never block evaluation, and an
evaluation that cannot complete fails closed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from capital_observability.metrics import (capital_actions_blocked_total,
                                           capital_evaluation_failures_total)
from common.datetime import utcnow

from .audit import AuditEmitter
from .breach import evaluate_breach_events
from .config import DEFAULT_RISK_CONFIG, RiskConfigProvider, RiskConfiguration
from .controls import (apply_overrides, evaluate_controls,
                       most_restrictive_decision, publish_decision_metrics)
from .exceptions import (CapitalControlBlockedError, OverrideValidationError,
                         StoreUnavailableError)
from .models import (ActionKey, Actor, BreachEvent, CapitalOverride,
                     CapitalSnapshot, ControlDecision, ExposureState,
                     ReservationState)
from .overrides import OverrideGovernor, OverrideRequest
from .snapshot import compute_snapshot
from .store import BreachEventStore, OverrideStore

__all__ = ["CapitalControlService", "SweepResult", "expire_reservations"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    snapshot: CapitalSnapshot
    decision: ControlDecision
    new_events: Tuple[BreachEvent, ...]
    history_available: bool = True


def expire_reservations(state: ExposureState) -> ExposureState:
    """Treat ACTIVE reservations whose hold has lapsed as EXPIRED."""
    now = state.now
    changed = False
    reservations = []
    for res in state.reservations:
        if res.state is ReservationState.ACTIVE and res.expires_at is not None and res.expires_at <= now:
            res = res.model_copy(update={"state": ReservationState.EXPIRED})
            changed = True
        reservations.append(res)
    if not changed:
        return state
    return state.model_copy(update={"reservations": reservations})


class CapitalControlService:
    """Evaluate capital controls and gate actions against the result."""

    def __init__(
        self,
        breach_store: BreachEventStore,
        override_store: OverrideStore,
        *,
        config: RiskConfiguration | RiskConfigProvider = DEFAULT_RISK_CONFIG,
        audit: AuditEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.breach_store = breach_store
        self.override_store = override_store
        self._config = config
        self.audit = audit or AuditEmitter()
        self.clock = clock

    # ------------------------------------------------------------------
    @property
    def config(self) -> RiskConfiguration:
        if isinstance(self._config, RiskConfigProvider):
            return self._config.get()
        return self._config

    @property
    def governor(self) -> OverrideGovernor:
        return OverrideGovernor(self.override_store, self.config, self.audit)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def snapshot(self, state: ExposureState) -> CapitalSnapshot:
        return compute_snapshot(expire_reservations(state), self.config)

    def recent_events(self, snapshot: CapitalSnapshot) -> Optional[List[BreachEvent]]:
        """Breach history inside the lookback window, ``None`` if unavailable."""
        since = snapshot.as_of - timedelta(minutes=self.config.buffer_negative_lookback_minutes)
        try:
            return self.breach_store.list_events(since=since)
        except StoreUnavailableError:
            logger.exception("breach history unavailable; evaluating on snapshot only")
            capital_evaluation_failures_total.labels(stage="history").inc()
            return None

    def run_sweep(self, state: ExposureState) -> SweepResult:
        """Snapshot, persist new breach events, then derive the decision."""
        config = self.config
        snap = compute_snapshot(expire_reservations(state), config)
        new_events = evaluate_breach_events(snap, self.breach_store, config, self.audit)
        history = self.recent_events(snap)
        decision = evaluate_controls(snap, history or (), config)
        publish_decision_metrics(snap, decision)
        logger.info(
            "capital controls evaluated: mode=%s breach_level=%s hu=%.4f ecr=%.4f",
            decision.mode.value,
            snap.breach_level.value,
            snap.hardstop_utilization,
            snap.ecr,
            extra={"mode": decision.mode.value, "snapshot_hash": decision.snapshot_hash},
        )
        return SweepResult(
            snapshot=snap,
            decision=decision,
            new_events=tuple(new_events),
            history_available=history is not None,
        )

    def safe_decision(self, state: ExposureState) -> Tuple[ControlDecision, bool]:
        """Return ``(decision, ok)``; ``ok`` is False when failing closed."""
        try:
            return self.run_sweep(state).decision, True
        except Exception as exc:
            logger.exception("capital control evaluation failed; failing closed")
            capital_evaluation_failures_total.labels(stage="evaluate").inc()
            return most_restrictive_decision(state.now, str(exc) or type(exc).__name__), False

    def effective_decision(self, state: ExposureState) -> ControlDecision:
        """Decision with active overrides merged into the block matrix."""
        decision, ok = self.safe_decision(state)
        if not ok:
            return decision
        try:
            overrides = self.governor.active_overrides(state.now)
        except StoreUnavailableError:
            logger.exception("override store unavailable; applying no overrides")
            capital_evaluation_failures_total.labels(stage="overrides").inc()
            return decision
        return apply_overrides(decision, overrides, state.now)

    # ------------------------------------------------------------------
    # Action gate
    # ------------------------------------------------------------------

    def check_action(
        self,
        action_key: ActionKey,
        state: ExposureState,
        *,
        actor_role: Optional[str] = None,
        actor_user_id: Optional[str] = None,
    ) -> ControlDecision:
        """Raise :class:`CapitalControlBlockedError` if *action_key* is blocked."""
        decision = self.effective_decision(state)
        if not decision.is_blocked(action_key):
            return decision

        capital_actions_blocked_total.labels(
            action_key=action_key.value, mode=decision.mode.value
        ).inc()
        logger.warning(
            "action %s blocked under %s",
            action_key.value,
            decision.mode.value,
            extra={"action_key": action_key.value, "mode": decision.mode.value},
        )
        self.audit.action_blocked(
            action_key,
            decision,
            state.now,
            actor_role=actor_role,
            actor_user_id=actor_user_id,
        )
        raise CapitalControlBlockedError(action_key, decision)

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def create_override(
        self, request: OverrideRequest, state: ExposureState
    ) -> Tuple[CapitalOverride, bool]:
        """Validate *request* against the current raw decision and persist it."""
        decision, ok = self.safe_decision(state)
        if not ok:
            raise OverrideValidationError(
                ["Decision unavailable; overrides cannot be created while evaluation is failing closed"]
            )
        return self.governor.create(request, decision, state.now)

    def revoke_override(self, override_id: str, actor: Actor, now: datetime | None = None) -> CapitalOverride:
        return self.governor.revoke(override_id, actor, now or self.clock())

    def expire_overrides(self, now: datetime | None = None) -> List[CapitalOverride]:
        return self.governor.sweep_expired(now or self.clock())
