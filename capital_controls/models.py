"""Domain models for the capital controls engine.

Collaborator inputs (reservations, orders, settlement cases, counterparties,
...) are pydantic models so that JSON handed over by other services is
validated at the boundary. Everything the engine computes is a frozen
dataclass: snapshots, breach events, decisions and overrides are never
mutated after construction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from common.datetime import parse_iso8601

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ReservationState(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


class OrderStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    RESERVED = "reserved"
    SETTLEMENT_PENDING = "settlement_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class SettlementStatus(str, Enum):
    DRAFT = "DRAFT"
    ESCROW_OPEN = "ESCROW_OPEN"
    AWAITING_FUNDS = "AWAITING_FUNDS"
    AWAITING_GOLD = "AWAITING_GOLD"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    READY_TO_SETTLE = "READY_TO_SETTLE"
    AUTHORIZED = "AUTHORIZED"
    PROCESSING_RAIL = "PROCESSING_RAIL"
    AMBIGUOUS_STATE = "AMBIGUOUS_STATE"
    SETTLED = "SETTLED"
    REVERSED = "REVERSED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


OPEN_SETTLEMENT_STATUSES = frozenset(
    {
        SettlementStatus.ESCROW_OPEN,
        SettlementStatus.AWAITING_FUNDS,
        SettlementStatus.AWAITING_GOLD,
        SettlementStatus.AWAITING_VERIFICATION,
        SettlementStatus.READY_TO_SETTLE,
        SettlementStatus.AUTHORIZED,
    }
)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CounterpartyStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    UNDER_REVIEW = "under-review"
    CLOSED = "closed"
    SUSPENDED = "suspended"


class CorridorStatus(str, Enum):
    ACTIVE = "active"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


class HubStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"
    SUSPENDED = "suspended"


class BreachLevel(str, Enum):
    CLEAR = "CLEAR"
    CAUTION = "CAUTION"
    BREACH = "BREACH"


class BreachEventType(str, Enum):
    ECR_CAUTION = "ECR_CAUTION"
    ECR_BREACH = "ECR_BREACH"
    HARDSTOP_CAUTION = "HARDSTOP_CAUTION"
    HARDSTOP_BREACH = "HARDSTOP_BREACH"
    BUFFER_NEGATIVE = "BUFFER_NEGATIVE"


class EventLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class ControlMode(str, Enum):
    NORMAL = "NORMAL"
    THROTTLE_RESERVATIONS = "THROTTLE_RESERVATIONS"
    FREEZE_CONVERSIONS = "FREEZE_CONVERSIONS"
    FREEZE_MARKETPLACE = "FREEZE_MARKETPLACE"
    EMERGENCY_HALT = "EMERGENCY_HALT"

    @property
    def severity(self) -> int:
        return _MODE_ORDER.index(self)

    @classmethod
    def from_severity(cls, severity: int) -> "ControlMode":
        return _MODE_ORDER[max(0, min(severity, len(_MODE_ORDER) - 1))]


_MODE_ORDER: Tuple[ControlMode, ...] = (
    ControlMode.NORMAL,
    ControlMode.THROTTLE_RESERVATIONS,
    ControlMode.FREEZE_CONVERSIONS,
    ControlMode.FREEZE_MARKETPLACE,
    ControlMode.EMERGENCY_HALT,
)

# Max one severity-level downgrade: marketplace freezes and halts stay put.
GLOBALLY_OVERRIDABLE_MODES = frozenset(
    {ControlMode.THROTTLE_RESERVATIONS, ControlMode.FREEZE_CONVERSIONS}
)


class ActionKey(str, Enum):
    CREATE_RESERVATION = "CREATE_RESERVATION"
    CONVERT_RESERVATION = "CONVERT_RESERVATION"
    PUBLISH_LISTING = "PUBLISH_LISTING"
    OPEN_SETTLEMENT = "OPEN_SETTLEMENT"
    EXECUTE_DVP = "EXECUTE_DVP"


ALL_ACTION_KEYS: Tuple[ActionKey, ...] = tuple(ActionKey)

ACTION_KEY_LABELS: Dict[ActionKey, str] = {
    ActionKey.CREATE_RESERVATION: "Create Reservation",
    ActionKey.CONVERT_RESERVATION: "Convert → Order",
    ActionKey.PUBLISH_LISTING: "Publish Listing",
    ActionKey.OPEN_SETTLEMENT: "Open Settlement",
    ActionKey.EXECUTE_DVP: "Execute DvP",
}


class OverrideStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class TRIBand(str, Enum):
    GREEN = "green"
    AMBER = "amber"
    RED = "red"


class ApprovalTier(str, Enum):
    AUTO = "auto"
    DESK_HEAD = "desk-head"
    CREDIT_COMMITTEE = "credit-committee"
    BOARD = "board"


class BlockerSeverity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    INFO = "INFO"


class CheckResult(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


# ---------------------------------------------------------------------------
# Collaborator inputs (pydantic)
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    # camelCase keys from collaborator payloads, snake_case from Python callers
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        allow_inf_nan=False,
    )


class CapitalBase(_Record):
    capital_base: float = Field(ge=0)
    hardstop_limit: float = Field(ge=0)
    tvar99: float = 0.0


class Reservation(_Record):
    id: str
    listing_id: str
    weight_oz: float = Field(ge=0)
    price_per_oz_locked: float = Field(ge=0)
    state: ReservationState
    expires_at: Optional[datetime] = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _utc(cls, v):
        return parse_iso8601(v) if v is not None else None


class Order(_Record):
    id: str
    listing_id: str
    weight_oz: float = Field(ge=0)
    price_per_oz: float = Field(ge=0)
    notional: float = Field(ge=0)
    status: OrderStatus


class InventoryPosition(_Record):
    id: str
    listing_id: str
    allocated_weight_oz: float = Field(default=0.0, ge=0)
    total_weight_oz: float = Field(default=0.0, ge=0)
    available_weight_oz: float = Field(default=0.0, ge=0)
    reserved_weight_oz: float = Field(default=0.0, ge=0)


class SettlementCase(_Record):
    id: str
    status: SettlementStatus
    notional_usd: float = Field(ge=0)
    weight_oz: float = Field(default=0.0, ge=0)
    updated_at: datetime

    @field_validator("updated_at", mode="before")
    @classmethod
    def _utc(cls, v):
        return parse_iso8601(v)


class Counterparty(_Record):
    id: str
    entity: str
    risk_level: RiskLevel
    status: CounterpartyStatus


class Corridor(_Record):
    id: str
    name: str
    risk_level: RiskLevel
    status: CorridorStatus


class Hub(_Record):
    id: str
    name: str
    status: HubStatus
    uptime: float = 100.0


class CapitalPosition(_Record):
    """Capital figures a single transaction is checked against."""

    capital_base: float = Field(ge=0)
    hardstop_limit: float = Field(ge=0)
    active_exposure: float = Field(default=0.0, ge=0)

    @classmethod
    def from_snapshot(cls, snapshot: "CapitalSnapshot") -> "CapitalPosition":
        return cls(
            capital_base=snapshot.capital_base,
            hardstop_limit=snapshot.hardstop_limit,
            active_exposure=snapshot.gross_exposure_notional,
        )


class ExposureState(_Record):
    """Aggregate exposure state handed to the snapshot calculator."""

    capital: CapitalBase
    reservations: List[Reservation] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)
    inventory: List[InventoryPosition] = Field(default_factory=list)
    settlements: List[SettlementCase] = Field(default_factory=list)
    now: datetime

    @field_validator("now", mode="before")
    @classmethod
    def _utc(cls, v):
        return parse_iso8601(v)


# ---------------------------------------------------------------------------
# Engine outputs (frozen dataclasses)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Driver:
    """Single exposure contributor shown in the top-drivers list."""

    label: str
    value: float
    id: Optional[str] = None
    source: str = ""


@dataclass(frozen=True)
class CapitalSnapshot:
    as_of: datetime
    capital_base: float
    hardstop_limit: float
    gross_exposure_notional: float
    reserved_notional: float
    allocated_notional: float
    settlement_notional_open: float
    settled_notional_today: float
    ecr: float
    hardstop_utilization: float
    buffer_vs_tvar99: float
    breach_level: BreachLevel
    breach_reasons: Tuple[str, ...]
    top_drivers: Tuple[Driver, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "capital_base": self.capital_base,
            "hardstop_limit": self.hardstop_limit,
            "gross_exposure_notional": self.gross_exposure_notional,
            "reserved_notional": self.reserved_notional,
            "allocated_notional": self.allocated_notional,
            "settlement_notional_open": self.settlement_notional_open,
            "settled_notional_today": self.settled_notional_today,
            "ecr": self.ecr,
            "hardstop_utilization": self.hardstop_utilization,
            "buffer_vs_tvar99": self.buffer_vs_tvar99,
            "breach_level": self.breach_level.value,
            "breach_reasons": list(self.breach_reasons),
            "top_drivers": [
                {"label": d.label, "value": d.value, "id": d.id, "source": d.source} for d in self.top_drivers
            ],
        }


@dataclass(frozen=True)
class BreachEvent:
    id: str
    occurred_at: datetime
    type: BreachEventType
    level: EventLevel
    message: str
    snapshot: CapitalSnapshot

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
            "type": self.type.value,
            "level": self.level.value,
            "message": self.message,
            "snapshot": self.snapshot.as_dict(),
        }


@dataclass(frozen=True)
class ControlLimits:
    """Advisory caps; only populated under THROTTLE_RESERVATIONS."""

    max_reservation_notional: Optional[float] = None
    max_reservation_weight_oz: Optional[float] = None


@dataclass(frozen=True)
class ControlDecision:
    as_of: datetime
    mode: ControlMode
    reasons: Tuple[str, ...]
    blocks: Mapping[ActionKey, bool]
    limits: ControlLimits
    snapshot_hash: str

    def is_blocked(self, action_key: ActionKey) -> bool:
        return bool(self.blocks.get(action_key, True))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "mode": self.mode.value,
            "reasons": list(self.reasons),
            "blocks": {k.value: v for k, v in self.blocks.items()},
            "limits": {
                "max_reservation_notional": self.limits.max_reservation_notional,
                "max_reservation_weight_oz": self.limits.max_reservation_weight_oz,
            },
            "snapshot_hash": self.snapshot_hash,
        }


def frozen_blocks(blocks: Mapping[ActionKey, bool]) -> Mapping[ActionKey, bool]:
    return MappingProxyType({key: bool(blocks.get(key, False)) for key in ALL_ACTION_KEYS})


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GlobalScope:
    kind: ClassVar[str] = "GLOBAL"


@dataclass(frozen=True)
class ActionScope:
    action_key: ActionKey
    kind: ClassVar[str] = "ACTION"


OverrideScope = Union[GlobalScope, ActionScope]


def scope_from_parts(kind: str, action_key: Optional[str]) -> OverrideScope:
    """Build a tagged scope from its flat ``(scope, action_key)`` encoding."""
    kind = (kind or "").upper()
    if kind == GlobalScope.kind:
        if action_key:
            raise ValueError("GLOBAL override must not specify an actionKey")
        return GlobalScope()
    if kind == ActionScope.kind:
        if not action_key:
            raise ValueError("ACTION-scoped override must specify an actionKey")
        try:
            return ActionScope(ActionKey(action_key))
        except ValueError:
            raise ValueError(f"unknown actionKey {action_key!r}") from None
    raise ValueError(f"unknown override scope {kind!r}")


def scope_action_key(scope: OverrideScope) -> Optional[ActionKey]:
    return scope.action_key if isinstance(scope, ActionScope) else None


@dataclass(frozen=True)
class Actor:
    role: str
    user_id: str
    name: str = ""


@dataclass(frozen=True)
class CapitalOverride:
    id: str
    scope: OverrideScope
    reason: str
    expires_at: datetime
    status: OverrideStatus
    actor: Actor
    created_at: datetime
    snapshot_hash: str = ""
    mode_at_creation: Optional[ControlMode] = None
    revoked_at: Optional[datetime] = None

    def effective_status(self, now: datetime) -> OverrideStatus:
        """Stored status with lazy expiry applied."""
        if self.status is OverrideStatus.ACTIVE and self.expires_at <= now:
            return OverrideStatus.EXPIRED
        return self.status

    def is_active(self, now: datetime) -> bool:
        return self.effective_status(now) is OverrideStatus.ACTIVE

    def as_dict(self) -> Dict[str, Any]:
        action_key = scope_action_key(self.scope)
        return {
            "id": self.id,
            "scope": self.scope.kind,
            "action_key": action_key.value if action_key else None,
            "reason": self.reason,
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "actor_role": self.actor.role,
            "actor_user_id": self.actor.user_id,
            "actor_name": self.actor.name,
            "created_at": self.created_at.isoformat(),
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "snapshot_hash": self.snapshot_hash,
            "mode_at_creation": self.mode_at_creation.value if self.mode_at_creation else None,
        }


# ---------------------------------------------------------------------------
# Transaction risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TRIComponent:
    weight: float
    raw: int
    weighted: float


@dataclass(frozen=True)
class TRIResult:
    score: int
    band: TRIBand
    components: Mapping[str, TRIComponent]
    formula: str


@dataclass(frozen=True)
class CapitalValidation:
    current_exposure: float
    post_txn_exposure: float
    capital_base: float
    current_ecr: float
    post_txn_ecr: float
    hardstop_limit: float
    current_hardstop_util: float
    post_txn_hardstop_util: float
    hardstop_remaining: float


@dataclass(frozen=True)
class PolicyBlocker:
    id: str
    severity: BlockerSeverity
    title: str
    detail: str


def has_block_level(blockers: Sequence[PolicyBlocker]) -> bool:
    return any(b.severity is BlockerSeverity.BLOCK for b in blockers)


@dataclass(frozen=True)
class ApprovalResult:
    tier: ApprovalTier
    label: str
    reason: str


@dataclass(frozen=True)
class ComplianceCheck:
    id: str
    name: str
    result: CheckResult
    detail: str


@dataclass(frozen=True)
class PolicySnapshot:
    """Frozen record of a transaction's risk assessment for audit replay."""

    tri: TRIResult
    capital: CapitalValidation
    approval: ApprovalResult
    blockers: Tuple[PolicyBlocker, ...]
    checks: Tuple[ComplianceCheck, ...] = field(default=())
    timestamp: Optional[datetime] = None

    @property
    def blocked(self) -> bool:
        return has_block_level(self.blockers)
