"""Breach classifier.

Turns a :class:`CapitalSnapshot` into zero or more breach events. IDs are
content-addressed over the condition and the snapshot minute, so repeated or
concurrent sweeps inside one minute converge on a single stored event.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from capital_observability.metrics import capital_breach_events_total
from common.datetime import minute_bucket

from .audit import AuditEmitter
from .config import DEFAULT_RISK_CONFIG, RiskConfiguration
from .exceptions import StoreUnavailableError
from .fingerprint import fingerprint
from .models import BreachEvent, BreachEventType, CapitalSnapshot, EventLevel
from .store import BreachEventStore

__all__ = ["breach_event_id", "breach_candidates", "evaluate_breach_events"]

logger = logging.getLogger(__name__)

Candidate = Tuple[BreachEventType, EventLevel, str]


def breach_event_id(event_type: BreachEventType, snapshot: CapitalSnapshot) -> str:
    return fingerprint(
        [
            event_type,
            minute_bucket(snapshot.as_of),
            snapshot.breach_level,
            f"{snapshot.hardstop_utilization:.4f}",
            f"{snapshot.ecr:.4f}",
        ],
        prefix="brch-",
    )


def breach_candidates(
    snapshot: CapitalSnapshot, config: RiskConfiguration = DEFAULT_RISK_CONFIG
) -> List[Candidate]:
    """Conditions the snapshot currently triggers, in evaluation order."""
    out: List[Candidate] = []
    target = config.target_ecr
    critical_ecr = target * config.ecr_critical_multiplier
    hu = snapshot.hardstop_utilization

    if snapshot.ecr >= critical_ecr:
        out.append((
            BreachEventType.ECR_BREACH,
            EventLevel.CRITICAL,
            f"ECR {snapshot.ecr:.2f}x exceeds {critical_ecr:.1f}x critical threshold (target: {target:g}x)",
        ))
    elif snapshot.ecr >= target:
        out.append((
            BreachEventType.ECR_CAUTION,
            EventLevel.WARN,
            f"ECR {snapshot.ecr:.2f}x exceeds target {target:.1f}x",
        ))

    if hu >= config.hardstop_breach_util:
        out.append((
            BreachEventType.HARDSTOP_BREACH,
            EventLevel.CRITICAL,
            f"Hardstop utilization {hu * 100:.2f}% ≥ {config.hardstop_breach_util * 100:.0f}% — BREACH",
        ))
    elif hu >= config.hardstop_caution_util:
        out.append((
            BreachEventType.HARDSTOP_CAUTION,
            EventLevel.WARN,
            f"Hardstop utilization {hu * 100:.2f}% in "
            f"{config.hardstop_caution_util * 100:.0f}–{config.hardstop_breach_util * 100:.0f}% caution band",
        ))

    if snapshot.buffer_vs_tvar99 < 0:
        out.append((
            BreachEventType.BUFFER_NEGATIVE,
            EventLevel.WARN,
            f"Buffer vs TVaR₉₉ is negative: -${abs(snapshot.buffer_vs_tvar99):,.0f}",
        ))
    return out


def evaluate_breach_events(
    snapshot: CapitalSnapshot,
    store: BreachEventStore,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
    audit: Optional[AuditEmitter] = None,
) -> List[BreachEvent]:
    """Persist the snapshot's new breach events and return them.

    Known IDs are skipped silently. Only events this call actually appended
    are audited and returned. If the store becomes unavailable the events
    persisted so far are returned and the rest are dropped for this sweep.
    """
    new_events: List[BreachEvent] = []
    for event_type, level, message in breach_candidates(snapshot, config):
        event_id = breach_event_id(event_type, snapshot)
        try:
            if store.has(event_id):
                continue
            event = BreachEvent(
                id=event_id,
                occurred_at=snapshot.as_of,
                type=event_type,
                level=level,
                message=message,
                snapshot=snapshot,
            )
            appended = store.append(event)
        except StoreUnavailableError:
            logger.exception(
                "breach store unavailable; %d event(s) persisted this sweep",
                len(new_events),
                extra={"event_id": event_id},
            )
            break
        if not appended:
            continue

        logger.warning(
            "capital breach %s (%s): %s",
            event_type.value,
            level.value,
            message,
            extra={"event_id": event_id},
        )
        capital_breach_events_total.labels(type=event_type.value, level=level.value).inc()
        if audit is not None:
            audit.breach_detected(event)
        new_events.append(event)
    return new_events
