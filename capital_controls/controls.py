"""Control-mode evaluator.

Maps a snapshot plus recent breach history onto one of five escalating
control modes, each with a fixed block matrix over the gated actions.
Pure: no persistence, no clock reads. Metrics gauges are the only side
effect and live in :func:`publish_decision_metrics`.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping

from capital_observability.metrics import (capital_control_mode_severity,
                                           capital_ecr_ratio,
                                           capital_hardstop_utilization)
from common.datetime import minute_bucket

from .config import DEFAULT_RISK_CONFIG, RiskConfiguration
from .fingerprint import fingerprint
from .models import (GLOBALLY_OVERRIDABLE_MODES, ActionKey, ActionScope,
                     BreachEvent, BreachEventType, BreachLevel,
                     CapitalOverride, CapitalSnapshot, ControlDecision,
                     ControlLimits, ControlMode, GlobalScope, frozen_blocks)

__all__ = [
    "BLOCK_MATRIX",
    "block_matrix",
    "compute_snapshot_hash",
    "evaluate_controls",
    "most_restrictive_decision",
    "apply_overrides",
    "publish_decision_metrics",
]

_A = ActionKey

BLOCK_MATRIX: Dict[ControlMode, frozenset] = {
    ControlMode.NORMAL: frozenset(),
    ControlMode.THROTTLE_RESERVATIONS: frozenset({_A.CREATE_RESERVATION}),
    ControlMode.FREEZE_CONVERSIONS: frozenset({_A.CREATE_RESERVATION, _A.CONVERT_RESERVATION}),
    ControlMode.FREEZE_MARKETPLACE: frozenset(
        {_A.CREATE_RESERVATION, _A.CONVERT_RESERVATION, _A.PUBLISH_LISTING}
    ),
    ControlMode.EMERGENCY_HALT: frozenset(ActionKey),
}


def block_matrix(mode: ControlMode) -> Mapping[ActionKey, bool]:
    blocked = BLOCK_MATRIX[mode]
    return frozen_blocks({key: key in blocked for key in ActionKey})


def compute_snapshot_hash(snapshot: CapitalSnapshot) -> str:
    return fingerprint(
        [
            minute_bucket(snapshot.as_of),
            f"{snapshot.ecr:.4f}",
            f"{snapshot.hardstop_utilization:.4f}",
            snapshot.breach_level,
            f"{snapshot.gross_exposure_notional:.2f}",
            f"{snapshot.capital_base:.2f}",
        ]
    )


def _decision(
    snapshot: CapitalSnapshot,
    mode: ControlMode,
    reasons: List[str],
    limits: ControlLimits | None = None,
) -> ControlDecision:
    return ControlDecision(
        as_of=snapshot.as_of,
        mode=mode,
        reasons=tuple(reasons),
        blocks=block_matrix(mode),
        limits=limits or ControlLimits(),
        snapshot_hash=compute_snapshot_hash(snapshot),
    )


def evaluate_controls(
    snapshot: CapitalSnapshot,
    recent_events: Iterable[BreachEvent] = (),
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> ControlDecision:
    """Derive the :class:`ControlDecision` for *snapshot*.

    Checks run from most to least severe and the first matching mode wins.
    Under CAUTION every trigger of the winning mode is listed as a reason.
    """
    hu = snapshot.hardstop_utilization
    reasons: List[str] = []

    if hu >= config.hardstop_exceeded_util:
        reasons.append(
            f"Hardstop utilization {hu * 100:.2f}% ≥ "
            f"{config.hardstop_exceeded_util * 100:.0f}% — EMERGENCY_HALT"
        )
        return _decision(snapshot, ControlMode.EMERGENCY_HALT, reasons)

    lookback = config.buffer_negative_lookback_minutes
    cutoff = snapshot.as_of - timedelta(minutes=lookback)
    if any(
        e.type is BreachEventType.BUFFER_NEGATIVE and e.occurred_at >= cutoff
        for e in recent_events
    ):
        reasons.append(
            f"BUFFER_NEGATIVE breach event detected within last {lookback} minutes — EMERGENCY_HALT"
        )
        return _decision(snapshot, ControlMode.EMERGENCY_HALT, reasons)

    if snapshot.breach_level is BreachLevel.BREACH:
        reasons.append(f"Breach level BREACH with HU {hu * 100:.2f}% — FREEZE_MARKETPLACE")
        return _decision(snapshot, ControlMode.FREEZE_MARKETPLACE, reasons)

    if snapshot.breach_level is not BreachLevel.CAUTION:
        return _decision(snapshot, ControlMode.NORMAL, reasons)

    ecr_freeze = config.target_ecr * config.ecr_freeze_multiplier
    if snapshot.ecr >= ecr_freeze:
        reasons.append(
            f"ECR {snapshot.ecr:.2f}x ≥ {ecr_freeze:.1f}x "
            f"(target × {config.ecr_freeze_multiplier:g}) — FREEZE_CONVERSIONS"
        )
    if hu >= config.hu_freeze_util:
        reasons.append(
            f"Hardstop utilization {hu * 100:.2f}% ≥ {config.hu_freeze_util * 100:.0f}% — FREEZE_CONVERSIONS"
        )
    if reasons:
        return _decision(snapshot, ControlMode.FREEZE_CONVERSIONS, reasons)

    drivers = snapshot.top_drivers
    if drivers and drivers[0].source == "reservation":
        reasons.append("Reserved notional is top exposure driver — THROTTLE_RESERVATIONS")
    if hu >= config.hu_throttle_util:
        reasons.append(
            f"Hardstop utilization {hu * 100:.2f}% ≥ {config.hu_throttle_util * 100:.0f}% — THROTTLE_RESERVATIONS"
        )
    if reasons:
        remaining = snapshot.hardstop_limit - snapshot.gross_exposure_notional
        limits = ControlLimits(
            max_reservation_notional=max(0.0, remaining * config.throttle_capacity_fraction)
        )
        return _decision(snapshot, ControlMode.THROTTLE_RESERVATIONS, reasons, limits)

    reasons.append("Breach level CAUTION — no specific throttle triggers met. Mode remains NORMAL.")
    return _decision(snapshot, ControlMode.NORMAL, reasons)


def most_restrictive_decision(as_of: datetime, reason: str) -> ControlDecision:
    """Fail-closed decision used when evaluation cannot complete."""
    return ControlDecision(
        as_of=as_of,
        mode=ControlMode.EMERGENCY_HALT,
        reasons=(f"Decision unavailable, treating as most restrictive mode: {reason}",),
        blocks=block_matrix(ControlMode.EMERGENCY_HALT),
        limits=ControlLimits(),
        snapshot_hash="",
    )


def apply_overrides(
    decision: ControlDecision,
    overrides: Iterable[CapitalOverride],
    now: datetime,
) -> ControlDecision:
    """Return *decision* with the block matrix relaxed by active overrides.

    A GLOBAL override swaps in the matrix of the mode one level below, and
    only while the current mode is globally overridable. An ACTION override
    clears its own key. Mode, reasons and hash are left untouched.
    """
    active = [o for o in overrides if o.is_active(now)]
    if not active:
        return decision

    blocks = dict(decision.blocks)
    if decision.mode in GLOBALLY_OVERRIDABLE_MODES and any(
        isinstance(o.scope, GlobalScope) for o in active
    ):
        blocks = dict(block_matrix(ControlMode.from_severity(decision.mode.severity - 1)))
    for ov in active:
        if isinstance(ov.scope, ActionScope):
            blocks[ov.scope.action_key] = False

    return ControlDecision(
        as_of=decision.as_of,
        mode=decision.mode,
        reasons=decision.reasons,
        blocks=frozen_blocks(blocks),
        limits=decision.limits,
        snapshot_hash=decision.snapshot_hash,
    )


def publish_decision_metrics(snapshot: CapitalSnapshot, decision: ControlDecision) -> None:
    capital_control_mode_severity.set(decision.mode.severity)
    capital_hardstop_utilization.set(snapshot.hardstop_utilization)
    capital_ecr_ratio.set(snapshot.ecr)
