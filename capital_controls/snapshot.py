"""Snapshot calculator.

Pure and deterministic: all inputs are passed explicitly and all outputs are
derived. No persistence, no clock reads, no randomness.
"""
from __future__ import annotations

import math
from collections import defaultdict
from typing import Dict, List, Tuple

from common.datetime import same_utc_day

from .config import DEFAULT_RISK_CONFIG, RiskConfiguration
from .exceptions import SnapshotComputationError
from .models import (OPEN_SETTLEMENT_STATUSES, TERMINAL_ORDER_STATUSES,
                     BreachLevel, CapitalSnapshot, Driver, ExposureState,
                     ReservationState, SettlementStatus)

__all__ = ["compute_snapshot", "classify_breach", "TOP_DRIVER_COUNT"]

TOP_DRIVER_COUNT = 5


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def classify_breach(
    ecr: float,
    hardstop_utilization: float,
    buffer_vs_tvar99: float,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> Tuple[BreachLevel, Tuple[str, ...]]:
    """Return ``(level, reasons)`` for the given ratios.

    BREACH is decided first. Caution checks only run while the level is still
    CLEAR; once inside them every applicable caution reason is appended. The
    buffer reason is added only if nothing else fired.
    """
    reasons: List[str] = []
    level = BreachLevel.CLEAR
    hu_pct = hardstop_utilization * 100

    if hardstop_utilization >= config.hardstop_exceeded_util:
        level = BreachLevel.BREACH
        reasons.append(
            f"Hardstop utilization {hu_pct:.2f}% ≥ "
            f"{config.hardstop_exceeded_util * 100:.0f}% — EXCEEDED"
        )
    elif hardstop_utilization >= config.hardstop_breach_util:
        level = BreachLevel.BREACH
        reasons.append(
            f"Hardstop utilization {hu_pct:.2f}% ≥ "
            f"{config.hardstop_breach_util * 100:.0f}% threshold"
        )

    if level is BreachLevel.CLEAR:
        if hardstop_utilization >= config.hardstop_caution_util:
            level = BreachLevel.CAUTION
            reasons.append(
                f"Hardstop utilization {hu_pct:.2f}% in "
                f"{config.hardstop_caution_util * 100:.0f}–{config.hardstop_breach_util * 100:.0f}% caution band"
            )
        if ecr >= config.target_ecr:
            level = BreachLevel.CAUTION
            reasons.append(f"ECR {ecr:.4f}x exceeds target {config.target_ecr:.1f}x")

    if buffer_vs_tvar99 < 0 and level is BreachLevel.CLEAR:
        level = BreachLevel.CAUTION
        reasons.append(f"Buffer vs TVaR₉₉ is negative: ${abs(buffer_vs_tvar99):,.0f}")

    return level, tuple(reasons)


def compute_snapshot(
    state: ExposureState, config: RiskConfiguration = DEFAULT_RISK_CONFIG
) -> CapitalSnapshot:
    """Aggregate *state* into an intraday :class:`CapitalSnapshot`."""
    now = state.now
    capital = state.capital

    # 1. reserved: ACTIVE reservations at locked price
    reserved_notional = 0.0
    # 2. allocated: CONVERTED reservations ...
    allocated_notional = 0.0
    converted_oz: Dict[str, float] = defaultdict(float)
    for res in state.reservations:
        notional = res.weight_oz * res.price_per_oz_locked
        if res.state is ReservationState.ACTIVE:
            reserved_notional += notional
        elif res.state is ReservationState.CONVERTED:
            allocated_notional += notional
            converted_oz[res.listing_id] += res.weight_oz

    # ... plus allocated inventory not already covered, at the listing's
    # average order price. Listings without orders cannot be priced.
    order_prices: Dict[str, List[float]] = defaultdict(list)
    for order in state.orders:
        order_prices[order.listing_id].append(order.price_per_oz)

    for inv in state.inventory:
        if inv.allocated_weight_oz <= 0:
            continue
        prices = order_prices.get(inv.listing_id)
        if not prices:
            continue
        avg_price = sum(prices) / len(prices)
        uncovered_oz = max(0.0, inv.allocated_weight_oz - converted_oz.get(inv.listing_id, 0.0))
        allocated_notional += uncovered_oz * avg_price

    # 3. settlement notional
    settlement_notional_open = 0.0
    settled_notional_today = 0.0
    for stl in state.settlements:
        if stl.status in OPEN_SETTLEMENT_STATUSES:
            settlement_notional_open += stl.notional_usd
        elif stl.status is SettlementStatus.SETTLED and same_utc_day(stl.updated_at, now):
            settled_notional_today += stl.notional_usd

    # 4. gross exposure
    gross_exposure = (
        allocated_notional
        + settlement_notional_open
        + reserved_notional * config.reserve_haircut
    )

    # 5. ratios
    ecr = _ratio(gross_exposure, capital.capital_base)
    hardstop_utilization = _ratio(gross_exposure, capital.hardstop_limit)

    # 6. buffer vs TVaR99
    buffer_vs_tvar99 = (
        capital.capital_base - capital.tvar99 - gross_exposure * config.tvar_addon_factor
    )
    # inputs are finite, but products and tiny denominators can overflow
    for name, value in (
        ("gross exposure", gross_exposure),
        ("ECR", ecr),
        ("hardstop utilization", hardstop_utilization),
        ("buffer vs TVaR99", buffer_vs_tvar99),
    ):
        if not math.isfinite(value):
            raise SnapshotComputationError(f"{name} is not finite ({value!r})")

    # 7. classification
    breach_level, breach_reasons = classify_breach(
        ecr, hardstop_utilization, buffer_vs_tvar99, config
    )

    # 8. top drivers
    drivers: List[Driver] = []
    for res in state.reservations:
        if res.state is ReservationState.ACTIVE:
            drivers.append(
                Driver(
                    label=f"Reservation {res.id} ({res.weight_oz:g} oz ACTIVE)",
                    value=res.weight_oz * res.price_per_oz_locked * config.reserve_haircut,
                    id=res.id,
                    source="reservation",
                )
            )
    for order in state.orders:
        if order.status not in TERMINAL_ORDER_STATUSES:
            drivers.append(
                Driver(
                    label=f"Order {order.id} ({order.weight_oz:g} oz {order.status.value})",
                    value=order.notional,
                    id=order.id,
                    source="order",
                )
            )
    for stl in state.settlements:
        if stl.status in OPEN_SETTLEMENT_STATUSES:
            drivers.append(
                Driver(
                    label=f"Settlement {stl.id} ({stl.weight_oz:g} oz {stl.status.value})",
                    value=stl.notional_usd,
                    id=stl.id,
                    source="settlement",
                )
            )
    # sorted() is stable: equal values keep input order
    top_drivers = tuple(sorted(drivers, key=lambda d: d.value, reverse=True)[:TOP_DRIVER_COUNT])

    return CapitalSnapshot(
        as_of=now,
        capital_base=capital.capital_base,
        hardstop_limit=capital.hardstop_limit,
        gross_exposure_notional=gross_exposure,
        reserved_notional=reserved_notional,
        allocated_notional=allocated_notional,
        settlement_notional_open=settlement_notional_open,
        settled_notional_today=settled_notional_today,
        ecr=ecr,
        hardstop_utilization=hardstop_utilization,
        buffer_vs_tvar99=buffer_vs_tvar99,
        breach_level=breach_level,
        breach_reasons=breach_reasons,
        top_drivers=top_drivers,
    )
