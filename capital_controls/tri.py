"""Transaction Risk Index and per-transaction policy checks.

Same inputs always yield the same TRI. All numeric thresholds come from
:class:`RiskConfiguration`; nothing here reads ambient state.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .config import DEFAULT_RISK_CONFIG, RiskConfiguration
from .models import (ApprovalResult, ApprovalTier, BlockerSeverity,
                     CapitalPosition, CapitalValidation, CheckResult,
                     ComplianceCheck, Corridor, CorridorStatus, Counterparty,
                     CounterpartyStatus, Hub, HubStatus, PolicyBlocker,
                     PolicySnapshot, RiskLevel, TRIBand, TRIComponent,
                     TRIResult, has_block_level)

__all__ = [
    "RISK_LEVEL_SCORES",
    "COUNTERPARTY_STATUS_SCORES",
    "TRI_WEIGHTS",
    "compute_tri",
    "tri_band",
    "validate_capital",
    "check_blockers",
    "has_block_level",
    "determine_approval",
    "run_compliance_checks",
    "build_policy_snapshot",
]

RISK_LEVEL_SCORES: Dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 3,
    RiskLevel.HIGH: 6,
    RiskLevel.CRITICAL: 9,
}

COUNTERPARTY_STATUS_SCORES: Dict[CounterpartyStatus, int] = {
    CounterpartyStatus.ACTIVE: 0,
    CounterpartyStatus.PENDING: 2,
    CounterpartyStatus.UNDER_REVIEW: 4,
    CounterpartyStatus.CLOSED: 6,
    CounterpartyStatus.SUSPENDED: 8,
}

TRI_WEIGHTS: Dict[str, float] = {
    "cpRisk": 0.40,
    "corRisk": 0.25,
    "amtConc": 0.20,
    "cpStatus": 0.15,
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def tri_band(score: int) -> TRIBand:
    if score <= 3:
        return TRIBand.GREEN
    if score <= 6:
        return TRIBand.AMBER
    return TRIBand.RED


def compute_tri(
    counterparty: Counterparty,
    corridor: Corridor,
    amount: float,
    hardstop_limit: float,
) -> TRIResult:
    """Weighted risk index in ``[1, 10]`` with a replayable formula string."""
    cp_risk = RISK_LEVEL_SCORES[counterparty.risk_level]
    cor_risk = RISK_LEVEL_SCORES[corridor.risk_level]
    amt_ratio = amount / hardstop_limit if hardstop_limit > 0 else 0.0
    amt_conc = min(10, max(1, math.ceil(amt_ratio * 20)))
    cp_status = COUNTERPARTY_STATUS_SCORES.get(counterparty.status, 0)

    raws = {"cpRisk": cp_risk, "corRisk": cor_risk, "amtConc": amt_conc, "cpStatus": cp_status}
    components = {
        key: TRIComponent(weight=TRI_WEIGHTS[key], raw=raw, weighted=raw * TRI_WEIGHTS[key])
        for key, raw in raws.items()
    }
    raw_total = sum(c.weighted for c in components.values())
    score = min(10, max(1, _round_half_up(raw_total)))

    w = TRI_WEIGHTS
    formula = (
        f"TRI = (CP_Risk:{cp_risk} × {w['cpRisk']}) + (Corridor_Risk:{cor_risk} × {w['corRisk']}) "
        f"+ (Amt_Conc:{amt_conc} × {w['amtConc']}) + (CP_Status:{cp_status} × {w['cpStatus']}) "
        f"= {raw_total:.2f} → {score}"
    )
    return TRIResult(score=score, band=tri_band(score), components=components, formula=formula)


def validate_capital(amount: float, position: CapitalPosition) -> CapitalValidation:
    """Current vs post-transaction ECR and hardstop utilization."""
    base = position.capital_base
    limit = position.hardstop_limit
    current = position.active_exposure
    post = current + amount
    return CapitalValidation(
        current_exposure=current,
        post_txn_exposure=post,
        capital_base=base,
        current_ecr=current / base if base > 0 else 0.0,
        post_txn_ecr=post / base if base > 0 else 0.0,
        hardstop_limit=limit,
        current_hardstop_util=current / limit if limit > 0 else 0.0,
        post_txn_hardstop_util=post / limit if limit > 0 else 0.0,
        hardstop_remaining=limit - current,
    )


def check_blockers(
    counterparty: Optional[Counterparty],
    corridor: Optional[Corridor],
    hub: Optional[Hub],
    tri: Optional[TRIResult],
    amount: float,
    position: CapitalPosition,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> List[PolicyBlocker]:
    B = BlockerSeverity
    out: List[PolicyBlocker] = []

    if counterparty is not None:
        name = counterparty.entity
        if counterparty.status is CounterpartyStatus.SUSPENDED:
            out.append(PolicyBlocker("cp-susp", B.BLOCK, "Counterparty Suspended",
                                     f"{name} is suspended — transactions blocked."))
        elif counterparty.status is CounterpartyStatus.UNDER_REVIEW:
            out.append(PolicyBlocker("cp-rev", B.WARN, "Counterparty Under Review",
                                     f"{name} is under active review."))
        elif counterparty.status is CounterpartyStatus.PENDING:
            out.append(PolicyBlocker("cp-pend", B.INFO, "Counterparty Pending",
                                     f"{name} KYC/onboarding pending."))

    if corridor is not None:
        if corridor.status is CorridorStatus.SUSPENDED:
            out.append(PolicyBlocker("cor-susp", B.BLOCK, "Corridor Suspended",
                                     f"{corridor.name} corridor suspended."))
        elif corridor.status is CorridorStatus.RESTRICTED:
            out.append(PolicyBlocker("cor-rest", B.WARN, "Corridor Restricted",
                                     f"{corridor.name} restricted — enhanced due diligence."))

    if hub is not None:
        if hub.status is HubStatus.OFFLINE:
            out.append(PolicyBlocker("hub-off", B.BLOCK, "Hub Offline", f"{hub.name} is offline."))
        elif hub.status is HubStatus.SUSPENDED:
            out.append(PolicyBlocker("hub-susp", B.BLOCK, "Hub Suspended", f"{hub.name} is suspended."))
        elif hub.status is HubStatus.MAINTENANCE:
            out.append(PolicyBlocker("hub-maint", B.WARN, "Hub Maintenance",
                                     f"{hub.name} under maintenance — delays possible."))
        elif hub.status is HubStatus.DEGRADED:
            out.append(PolicyBlocker("hub-deg", B.WARN, "Hub Degraded", f"{hub.name} degraded mode."))

    remaining = position.hardstop_limit - position.active_exposure
    if amount > remaining:
        out.append(PolicyBlocker("hs-breach", B.BLOCK, "Hardstop Breach",
                                 f"Amount exceeds remaining capacity (${remaining / 1e6:.1f}M)."))

    base = position.capital_base
    post_ecr = (position.active_exposure + amount) / base if base > 0 else 0.0
    if post_ecr > config.max_ecr_ratio:
        out.append(PolicyBlocker("ecr-breach", B.BLOCK, "ECR Breach",
                                 f"Post-transaction ECR {post_ecr:.2f}x exceeds {config.max_ecr_ratio:g}x limit."))

    if tri is not None:
        factor = config.tri_concentration_factor
        if tri.score >= config.tri_critical_threshold and amount > remaining * factor:
            out.append(PolicyBlocker(
                "tri-conc", B.BLOCK, "High-Risk Concentration",
                f"TRI ≥ {config.tri_critical_threshold} and amount > {factor * 100:.0f}% of remaining hardstop.",
            ))
        if tri.score >= config.tri_elevated_threshold:
            out.append(PolicyBlocker("tri-high", B.WARN, "Elevated TRI",
                                     f"TRI {tri.score} (Red band) — enhanced monitoring."))
    return out


def determine_approval(
    tri_score: int, amount: float, config: RiskConfiguration = DEFAULT_RISK_CONFIG
) -> ApprovalResult:
    """First matching rung of the approval ladder, least senior first."""
    auto_limit = config.auto_approval_limit_cents / 100
    desk_limit = config.desk_head_limit_cents / 100
    cc_limit = config.credit_committee_limit_cents / 100

    if tri_score <= 3 and amount <= auto_limit:
        return ApprovalResult(ApprovalTier.AUTO, "Auto-Approved",
                              f"TRI ≤ 3 AND amount ≤ ${auto_limit / 1e6:.0f}M")
    if tri_score <= 5 and amount <= desk_limit:
        return ApprovalResult(ApprovalTier.DESK_HEAD, "Desk Head",
                              f"TRI ≤ 5 AND amount ≤ ${desk_limit / 1e6:.0f}M")
    if tri_score <= 7 and amount <= cc_limit:
        return ApprovalResult(ApprovalTier.CREDIT_COMMITTEE, "Credit Committee",
                              f"TRI ≤ 7 AND amount ≤ ${cc_limit / 1e6:.0f}M")
    return ApprovalResult(ApprovalTier.BOARD, "Board Approval",
                          f"TRI > 7 OR amount > ${cc_limit / 1e6:.0f}M")


def run_compliance_checks(
    counterparty: Counterparty,
    corridor: Corridor,
    hub: Hub,
    tri: TRIResult,
    capital: CapitalValidation,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> List[ComplianceCheck]:
    R = CheckResult
    checks: List[ComplianceCheck] = []

    cp, cp_status = counterparty.entity, counterparty.status
    if cp_status is CounterpartyStatus.SUSPENDED:
        checks.append(ComplianceCheck("cp", "Counterparty Status", R.FAIL, f"{cp} is suspended."))
    elif cp_status in (CounterpartyStatus.UNDER_REVIEW, CounterpartyStatus.PENDING):
        checks.append(ComplianceCheck("cp", "Counterparty Status", R.WARN, f"{cp} is {cp_status.value}."))
    else:
        checks.append(ComplianceCheck("cp", "Counterparty Status", R.PASS, f"{cp} is {cp_status.value}."))

    if corridor.status is CorridorStatus.SUSPENDED:
        checks.append(ComplianceCheck("cor", "Corridor Status", R.FAIL, f"{corridor.name} suspended."))
    elif corridor.status is CorridorStatus.RESTRICTED:
        checks.append(ComplianceCheck("cor", "Corridor Status", R.WARN, f"{corridor.name} restricted."))
    else:
        checks.append(ComplianceCheck("cor", "Corridor Status", R.PASS, f"{corridor.name} active."))

    if hub.status in (HubStatus.OFFLINE, HubStatus.SUSPENDED):
        checks.append(ComplianceCheck("hub", "Hub Operational", R.FAIL, f"{hub.name} {hub.status.value}."))
    elif hub.status in (HubStatus.MAINTENANCE, HubStatus.DEGRADED):
        checks.append(ComplianceCheck("hub", "Hub Operational", R.WARN, f"{hub.name} {hub.status.value}."))
    else:
        checks.append(ComplianceCheck("hub", "Hub Operational", R.PASS,
                                      f"{hub.name} operational ({hub.uptime:g}%)."))

    ecr = capital.post_txn_ecr
    if ecr > config.max_ecr_ratio:
        checks.append(ComplianceCheck("ecr", "Capital Adequacy (ECR)", R.FAIL,
                                      f"Post-txn ECR {ecr:.2f}x > {config.max_ecr_ratio:g}x limit."))
    elif ecr > config.ecr_warn_ratio:
        checks.append(ComplianceCheck("ecr", "Capital Adequacy (ECR)", R.WARN,
                                      f"Post-txn ECR {ecr:.2f}x approaching limit."))
    else:
        checks.append(ComplianceCheck("ecr", "Capital Adequacy (ECR)", R.PASS,
                                      f"Post-txn ECR {ecr:.2f}x within limit."))

    hu = capital.post_txn_hardstop_util
    if hu > config.hardstop_util_fail:
        checks.append(ComplianceCheck("hs", "Hardstop Compliance", R.FAIL,
                                      f"Post-txn utilization {hu * 100:.1f}% exceeds limit."))
    elif hu > config.hardstop_util_warn:
        checks.append(ComplianceCheck("hs", "Hardstop Compliance", R.WARN,
                                      f"Post-txn utilization {hu * 100:.1f}% near limit."))
    else:
        checks.append(ComplianceCheck("hs", "Hardstop Compliance", R.PASS,
                                      f"Post-txn utilization {hu * 100:.1f}%."))

    if tri.score >= config.tri_critical_threshold:
        checks.append(ComplianceCheck("tri", "Transaction Risk Index", R.FAIL,
                                      f"TRI {tri.score} (Red) — board review required."))
    elif tri.score >= config.tri_warn_threshold:
        checks.append(ComplianceCheck("tri", "Transaction Risk Index", R.WARN,
                                      f"TRI {tri.score} ({tri.band.value})."))
    else:
        checks.append(ComplianceCheck("tri", "Transaction Risk Index", R.PASS,
                                      f"TRI {tri.score} (Green)."))
    return checks


def build_policy_snapshot(
    counterparty: Counterparty,
    corridor: Corridor,
    hub: Hub,
    amount: float,
    position: CapitalPosition,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
    timestamp: Optional[datetime] = None,
) -> PolicySnapshot:
    """Run the full per-transaction assessment and freeze it for audit."""
    tri = compute_tri(counterparty, corridor, amount, position.hardstop_limit)
    capital = validate_capital(amount, position)
    return PolicySnapshot(
        tri=tri,
        capital=capital,
        approval=determine_approval(tri.score, amount, config),
        blockers=tuple(check_blockers(counterparty, corridor, hub, tri, amount, position, config)),
        checks=tuple(run_compliance_checks(counterparty, corridor, hub, tri, capital, config)),
        timestamp=timestamp,
    )
