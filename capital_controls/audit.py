"""Audit emitter for capital-control governance events.

Records carry deterministic ``event_id``s so that replays and concurrent
writers collapse onto one journal row. Emission is best-effort by contract:
a failing sink is logged and counted, and the state change that triggered
the record is never rolled back.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlmodel import Session

from capital_observability.metrics import capital_audit_failures_total
from common.audit import get_engine, log_event
from common.datetime import minute_bucket

from .fingerprint import fingerprint
from .models import (ACTION_KEY_LABELS, ActionKey, BreachEvent, CapitalOverride,
                     ControlDecision, ControlMode, EventLevel,
                     scope_action_key)

__all__ = [
    "AuditRecord",
    "AuditSink",
    "AuditEmitter",
    "JournalAuditSink",
    "MemoryAuditSink",
]

logger = logging.getLogger(__name__)

SERVICE_NAME = "capital_controls"

_SEVERITY = {
    EventLevel.CRITICAL: "critical",
    EventLevel.WARN: "warning",
    EventLevel.INFO: "info",
}


@dataclass(frozen=True)
class AuditRecord:
    event_id: str
    occurred_at: datetime
    action: str
    resource_type: str
    resource_id: str
    message: str
    actor_role: str = "system"
    actor_user_id: Optional[str] = None
    result: str = "SUCCESS"
    severity: str = "info"
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def write(self, record: AuditRecord) -> bool:
        """Persist *record*; ``False`` when its event id was already written."""
        ...


class JournalAuditSink:
    """Writes to the shared ``audit_journal`` table."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or (lambda: Session(get_engine()))

    def write(self, record: AuditRecord) -> bool:
        with self._session_factory() as session:
            return log_event(
                session=session,
                event_id=record.event_id,
                service=SERVICE_NAME,
                action=record.action,
                actor=record.actor_user_id,
                actor_role=record.actor_role,
                resource_type=record.resource_type,
                resource_id=record.resource_id,
                result=record.result,
                severity=record.severity,
                message=record.message,
                ts=record.occurred_at,
                details=record.metadata,
            )


class MemoryAuditSink:
    """Process-local sink, deduplicated by event id."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def write(self, record: AuditRecord) -> bool:
        with self._lock:
            if record.event_id in self._seen:
                return False
            self._seen.add(record.event_id)
            self.records.append(record)
            return True


class AuditEmitter:
    """Builds and emits governance audit records."""

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink: AuditSink = sink or MemoryAuditSink()

    def emit(self, record: AuditRecord) -> bool:
        try:
            return self.sink.write(record)
        except Exception:
            logger.exception(
                "audit emission failed for %s", record.action, extra={"event_id": record.event_id}
            )
            capital_audit_failures_total.labels(action=record.action).inc()
            return False

    # ------------------------------------------------------------------
    # Record builders
    # ------------------------------------------------------------------

    def breach_detected(self, event: BreachEvent) -> bool:
        snap = event.snapshot
        driver_ids = ",".join(d.id for d in snap.top_drivers if d.id)
        return self.emit(
            AuditRecord(
                event_id=event.id,
                occurred_at=event.occurred_at,
                action="CAPITAL_BREACH_DETECTED",
                resource_type="CAPITAL",
                resource_id=event.id,
                message=event.message,
                severity=_SEVERITY[event.level],
                metadata={
                    "breach_type": event.type.value,
                    "hardstop_utilization": round(snap.hardstop_utilization, 4),
                    "ecr": round(snap.ecr, 4),
                    "top_driver_ids": driver_ids,
                },
            )
        )

    def override_created(self, override: CapitalOverride) -> bool:
        action_key = scope_action_key(override.scope)
        return self.emit(
            AuditRecord(
                event_id=f"{override.id}:CREATED",
                occurred_at=override.created_at,
                action="CAPITAL_OVERRIDE_CREATED",
                resource_type="CAPITAL_OVERRIDE",
                resource_id=override.id,
                actor_role=override.actor.role,
                actor_user_id=override.actor.user_id,
                severity="warning",
                message=(
                    f"{override.scope.kind} override created by {override.actor.name or override.actor.user_id} "
                    f"until {override.expires_at.isoformat()}"
                ),
                metadata={
                    "scope": override.scope.kind,
                    "action_key": action_key.value if action_key else None,
                    "reason": override.reason,
                    "expires_at": override.expires_at.isoformat(),
                    "snapshot_hash": override.snapshot_hash,
                    "mode_at_creation": (
                        override.mode_at_creation.value if override.mode_at_creation else None
                    ),
                },
            )
        )

    def override_revoked(self, override: CapitalOverride, actor_role: str, actor_user_id: str) -> bool:
        assert override.revoked_at is not None
        return self.emit(
            AuditRecord(
                event_id=f"{override.id}:REVOKED",
                occurred_at=override.revoked_at,
                action="CAPITAL_OVERRIDE_REVOKED",
                resource_type="CAPITAL_OVERRIDE",
                resource_id=override.id,
                actor_role=actor_role,
                actor_user_id=actor_user_id,
                severity="info",
                message=f"Override {override.id} revoked",
                metadata={"scope": override.scope.kind},
            )
        )

    def override_expired(self, override: CapitalOverride, now: datetime) -> bool:
        return self.emit(
            AuditRecord(
                event_id=f"{override.id}:EXPIRED",
                occurred_at=now,
                action="CAPITAL_OVERRIDE_EXPIRED",
                resource_type="CAPITAL_OVERRIDE",
                resource_id=override.id,
                severity="info",
                message=f"Override {override.id} expired at {override.expires_at.isoformat()}",
                metadata={"scope": override.scope.kind},
            )
        )

    def action_blocked(
        self,
        action_key: ActionKey,
        decision: ControlDecision,
        now: datetime,
        *,
        actor_role: Optional[str] = None,
        actor_user_id: Optional[str] = None,
    ) -> bool:
        dedup = fingerprint(
            [action_key, decision.mode, minute_bucket(now), actor_user_id or "anon"],
            prefix="CC-BLOCK-",
            sep="-",
        )
        return self.emit(
            AuditRecord(
                event_id=dedup,
                occurred_at=now,
                action="CAPITAL_CONTROL_BLOCKED",
                resource_type="CAPITAL",
                resource_id=action_key.value,
                actor_role=actor_role or "system",
                actor_user_id=actor_user_id,
                result="DENIED",
                severity="critical" if decision.mode is ControlMode.EMERGENCY_HALT else "warning",
                message=f"{ACTION_KEY_LABELS[action_key]} blocked by capital control mode {decision.mode.value}",
                metadata={
                    "action_key": action_key.value,
                    "action_label": ACTION_KEY_LABELS[action_key],
                    "mode": decision.mode.value,
                    "snapshot_hash": decision.snapshot_hash,
                    "reasons": "; ".join(decision.reasons),
                    "override_applied": False,
                },
            )
        )
