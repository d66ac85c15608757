"""Override governor.

Role-gated, time-boxed relaxations of the control decision's block matrix.
Creation is idempotent per actor, minute and action; revocation and expiry
are compare-and-swap transitions out of ACTIVE, so terminal states stick.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from capital_observability.metrics import capital_override_actions_total
from common.datetime import minute_bucket, parse_iso8601

from .audit import AuditEmitter
from .config import DEFAULT_RISK_CONFIG, RiskConfiguration
from .exceptions import (OverrideAuthorizationError, OverrideNotFoundError,
                         OverrideStateError, OverrideValidationError)
from .models import (GLOBALLY_OVERRIDABLE_MODES, Actor, CapitalOverride,
                     ControlDecision, GlobalScope, OverrideScope,
                     OverrideStatus, scope_action_key, scope_from_parts)
from .store import OverrideStore

__all__ = ["OverrideRequest", "OverrideGovernor", "build_override_id"]

logger = logging.getLogger(__name__)


class OverrideRequest(BaseModel):
    """Override creation payload as received from an admin console.

    ``scope``/``action_key`` arrive flat and are turned into a tagged scope
    during validation. ``snapshot_hash``, when given, pins the request to the
    decision the operator was looking at.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    scope: str
    action_key: Optional[str] = None
    reason: str = ""
    expires_at: datetime
    actor_role: str
    actor_user_id: str
    actor_name: str = ""
    snapshot_hash: Optional[str] = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _utc(cls, v):
        return parse_iso8601(v)

    @property
    def actor(self) -> Actor:
        return Actor(role=self.actor_role, user_id=self.actor_user_id, name=self.actor_name)


def build_override_id(actor_user_id: str, created_at: datetime, scope: OverrideScope) -> str:
    action_key = scope_action_key(scope)
    suffix = f"-{action_key.value}" if action_key else ""
    return f"OVR-{actor_user_id}-{minute_bucket(created_at)}{suffix}"


class OverrideGovernor:
    def __init__(
        self,
        store: OverrideStore,
        config: RiskConfiguration = DEFAULT_RISK_CONFIG,
        audit: AuditEmitter | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.audit = audit

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def validate(
        self, request: OverrideRequest, decision: ControlDecision, now: datetime
    ) -> Tuple[Optional[OverrideScope], List[str]]:
        """Return the parsed scope and every validation error found."""
        errors: List[str] = []
        allowed = self.config.override_allowed_roles

        if request.actor_role not in allowed:
            errors.append(
                f'Role "{request.actor_role}" is not authorized to create overrides. '
                f"Allowed: {', '.join(allowed)}"
            )

        reason_len = len(request.reason.strip())
        if reason_len < self.config.override_min_reason_length:
            errors.append(
                f"Reason must be at least {self.config.override_min_reason_length} "
                f"characters (got {reason_len})"
            )

        if request.expires_at <= now:
            errors.append(f"expiresAt {request.expires_at.isoformat()} is not in the future")

        scope: Optional[OverrideScope] = None
        try:
            scope = scope_from_parts(request.scope, request.action_key)
        except ValueError as exc:
            errors.append(str(exc))

        if isinstance(scope, GlobalScope) and decision.mode not in GLOBALLY_OVERRIDABLE_MODES:
            modes = ", ".join(m.value for m in sorted(GLOBALLY_OVERRIDABLE_MODES, key=lambda m: m.severity))
            errors.append(
                f'GLOBAL override not permitted for mode "{decision.mode.value}". Only allowed for: {modes}'
            )

        if request.snapshot_hash is not None and request.snapshot_hash != decision.snapshot_hash:
            errors.append(
                f"Snapshot hash {request.snapshot_hash} is stale; current risk state is {decision.snapshot_hash}"
            )

        return scope, errors

    def create(
        self, request: OverrideRequest, decision: ControlDecision, now: datetime
    ) -> Tuple[CapitalOverride, bool]:
        """Create an override; returns ``(override, is_new)``.

        Raises :class:`OverrideValidationError` with all failures and writes
        nothing when the request is invalid.
        """
        scope, errors = self.validate(request, decision, now)
        if errors:
            capital_override_actions_total.labels(action="create", outcome="rejected").inc()
            logger.info("override request rejected: %s", "; ".join(errors))
            raise OverrideValidationError(errors)
        assert scope is not None

        override = CapitalOverride(
            id=build_override_id(request.actor_user_id, now, scope),
            scope=scope,
            reason=request.reason.strip(),
            expires_at=request.expires_at,
            status=OverrideStatus.ACTIVE,
            actor=request.actor,
            created_at=now,
            snapshot_hash=decision.snapshot_hash,
            mode_at_creation=decision.mode,
        )

        if not self.store.insert(override):
            existing = self.store.get(override.id)
            capital_override_actions_total.labels(action="create", outcome="duplicate").inc()
            if existing is None:
                raise OverrideStateError(f"Override {override.id} vanished after duplicate insert")
            return existing, False

        capital_override_actions_total.labels(action="create", outcome="created").inc()
        logger.warning(
            "capital override %s created by %s (%s) until %s",
            override.id,
            override.actor.user_id,
            override.actor.role,
            override.expires_at.isoformat(),
            extra={"override_id": override.id, "mode": decision.mode.value},
        )
        if self.audit is not None:
            self.audit.override_created(override)
        return override, True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def revoke(self, override_id: str, actor: Actor, now: datetime) -> CapitalOverride:
        if actor.role not in self.config.override_allowed_roles:
            capital_override_actions_total.labels(action="revoke", outcome="rejected").inc()
            raise OverrideAuthorizationError(
                f'Role "{actor.role}" is not authorized to revoke overrides'
            )

        current = self.store.get(override_id)
        if current is None:
            raise OverrideNotFoundError(f"Override {override_id} not found")
        status = current.effective_status(now)
        if status is not OverrideStatus.ACTIVE:
            capital_override_actions_total.labels(action="revoke", outcome="rejected").inc()
            raise OverrideStateError(
                f"Override {override_id} is {status.value}; only ACTIVE overrides can be revoked"
            )

        revoked = self.store.compare_and_set_status(
            override_id, OverrideStatus.ACTIVE, OverrideStatus.REVOKED, revoked_at=now
        )
        if revoked is None:
            capital_override_actions_total.labels(action="revoke", outcome="conflict").inc()
            raise OverrideStateError(f"Override {override_id} changed state concurrently")

        capital_override_actions_total.labels(action="revoke", outcome="revoked").inc()
        logger.info(
            "capital override %s revoked by %s", override_id, actor.user_id,
            extra={"override_id": override_id},
        )
        if self.audit is not None:
            self.audit.override_revoked(revoked, actor.role, actor.user_id)
        return revoked

    def sweep_expired(self, now: datetime) -> List[CapitalOverride]:
        """Flip ACTIVE overrides past ``expires_at`` to EXPIRED in storage."""
        expired: List[CapitalOverride] = []
        for ov in self.store.list_overrides():
            if ov.status is not OverrideStatus.ACTIVE or ov.expires_at > now:
                continue
            updated = self.store.compare_and_set_status(
                ov.id, OverrideStatus.ACTIVE, OverrideStatus.EXPIRED
            )
            if updated is None:
                continue
            capital_override_actions_total.labels(action="expire", outcome="expired").inc()
            if self.audit is not None:
                self.audit.override_expired(updated, now)
            expired.append(updated)
        if expired:
            logger.info("expired %d capital override(s)", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_overrides(self, now: datetime) -> List[CapitalOverride]:
        return [ov for ov in self.store.list_overrides() if ov.is_active(now)]
