"""Risk configuration for the capital controls engine.

Every numeric threshold used by the snapshot calculator, breach classifier,
control-mode evaluator and TRI scorer lives on :class:`RiskConfiguration`,
which is passed by value into each pure function. Operators retune the engine
through the ``global_risk_parameters`` table (one active row) or a JSON file;
when neither is reachable the compiled :data:`DEFAULT_RISK_CONFIG` applies.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy import BigInteger, Boolean, Column, Float, Integer, String
from sqlmodel import Field, Session, SQLModel, select

from capital_observability.metrics import capital_config_fallbacks_total

__all__ = [
    "RiskConfiguration",
    "DEFAULT_RISK_CONFIG",
    "RiskParameters",
    "RiskConfigProvider",
    "load_config_file",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskConfiguration:
    """Versioned threshold set.

    Attributes
    ----------
    target_ecr
        Charter exposure-to-capital target (x). Snapshot CAUTION at or above.
    reserve_haircut
        Share of ACTIVE reservation notional counted toward gross exposure.
    tvar_addon_factor
        Tail-risk surcharge applied to gross exposure in the TVaR buffer.
    hardstop_exceeded_util / hardstop_breach_util / hardstop_caution_util
        Hardstop utilization bands for snapshot classification and breach events.
    hu_freeze_util / hu_throttle_util
        Utilization triggers for FREEZE_CONVERSIONS / THROTTLE_RESERVATIONS
        while the snapshot is at CAUTION.
    ecr_freeze_multiplier / ecr_critical_multiplier
        Multiples of ``target_ecr`` for conversion freeze and CRITICAL ECR events.
    max_ecr_ratio / ecr_warn_ratio / hardstop_util_fail / hardstop_util_warn
        Per-transaction capital checks (blockers and compliance checklist).
    tri_*
        TRI thresholds for blockers and compliance checks.
    *_limit_cents
        Approval-tier amount ceilings in cents.
    """

    version: int = 1

    # capital snapshot
    target_ecr: float = 8.0
    reserve_haircut: float = 0.35
    tvar_addon_factor: float = 0.12
    hardstop_exceeded_util: float = 1.0
    hardstop_breach_util: float = 0.95
    hardstop_caution_util: float = 0.80

    # control modes
    hu_freeze_util: float = 0.93
    hu_throttle_util: float = 0.90
    ecr_freeze_multiplier: float = 1.05
    ecr_critical_multiplier: float = 1.2
    buffer_negative_lookback_minutes: int = 60
    throttle_capacity_fraction: float = 0.5

    # overrides
    override_allowed_roles: Tuple[str, ...] = ("admin", "treasury", "compliance")
    override_min_reason_length: int = 20

    # per-transaction policy
    max_ecr_ratio: float = 8.0
    ecr_warn_ratio: float = 7.0
    hardstop_util_fail: float = 1.0
    hardstop_util_warn: float = 0.9
    tri_critical_threshold: int = 8
    tri_elevated_threshold: int = 7
    tri_warn_threshold: int = 5
    tri_concentration_factor: float = 0.5
    auto_approval_limit_cents: int = 2_500_000_000
    desk_head_limit_cents: int = 5_000_000_000
    credit_committee_limit_cents: int = 10_000_000_000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: "RiskConfiguration | None" = None) -> "RiskConfiguration":
        """Overlay known keys of *data* onto *base* (defaults when omitted)."""
        known = {f.name for f in fields(cls)}
        updates: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key == "override_allowed_roles":
                value = tuple(value)
            updates[key] = value
        return replace(base or cls(), **updates)

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["override_allowed_roles"] = list(self.override_allowed_roles)
        return out


DEFAULT_RISK_CONFIG = RiskConfiguration()


# ---------------------------------------------------------------------------
# File source
# ---------------------------------------------------------------------------


def load_config_file(path: str | Path | None = None) -> RiskConfiguration:
    """Load a JSON threshold file, falling back to defaults when absent."""
    cfg_path = Path(path or os.getenv("RISK_CONFIG_PATH", "risk_config.json"))
    try:
        with cfg_path.open() as fp:
            data = json.load(fp)
    except FileNotFoundError:
        return DEFAULT_RISK_CONFIG
    return RiskConfiguration.from_mapping(data)


# ---------------------------------------------------------------------------
# Database source
# ---------------------------------------------------------------------------


class RiskParameters(SQLModel, table=True):
    """Operator-tunable thresholds. At most one row is active."""

    __tablename__ = "global_risk_parameters"

    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = Field(default=1, sa_column=Column("version", Integer, nullable=False, default=1))
    max_ecr_ratio: float = Field(default=8.0, sa_column=Column("max_ecr_ratio", Float, nullable=False))
    ecr_warn_ratio: float = Field(default=7.0, sa_column=Column("ecr_warn_ratio", Float, nullable=False))
    hardstop_util_fail: float = Field(default=1.0, sa_column=Column("hardstop_util_fail", Float, nullable=False))
    hardstop_util_warn: float = Field(default=0.9, sa_column=Column("hardstop_util_warn", Float, nullable=False))
    tri_critical_threshold: int = Field(default=8, sa_column=Column("tri_critical_threshold", Integer, nullable=False))
    tri_elevated_threshold: int = Field(default=7, sa_column=Column("tri_elevated_threshold", Integer, nullable=False))
    tri_warn_threshold: int = Field(default=5, sa_column=Column("tri_warn_threshold", Integer, nullable=False))
    tri_concentration_factor: float = Field(
        default=0.5, sa_column=Column("tri_concentration_factor", Float, nullable=False)
    )
    auto_approval_limit_cents: int = Field(
        default=2_500_000_000, sa_column=Column("auto_approval_limit_cents", BigInteger, nullable=False)
    )
    desk_head_limit_cents: int = Field(
        default=5_000_000_000, sa_column=Column("desk_head_limit_cents", BigInteger, nullable=False)
    )
    credit_committee_limit_cents: int = Field(
        default=10_000_000_000, sa_column=Column("credit_committee_limit_cents", BigInteger, nullable=False)
    )
    is_active: bool = Field(default=True, sa_column=Column("is_active", Boolean, nullable=False, default=True))
    created_by: str = Field(default="system", sa_column=Column("created_by", String, nullable=False))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_config(self, base: RiskConfiguration) -> RiskConfiguration:
        return replace(
            base,
            version=self.version,
            max_ecr_ratio=float(self.max_ecr_ratio),
            ecr_warn_ratio=float(self.ecr_warn_ratio),
            hardstop_util_fail=float(self.hardstop_util_fail),
            hardstop_util_warn=float(self.hardstop_util_warn),
            tri_critical_threshold=int(self.tri_critical_threshold),
            tri_elevated_threshold=int(self.tri_elevated_threshold),
            tri_warn_threshold=int(self.tri_warn_threshold),
            tri_concentration_factor=float(self.tri_concentration_factor),
            auto_approval_limit_cents=int(self.auto_approval_limit_cents),
            desk_head_limit_cents=int(self.desk_head_limit_cents),
            credit_committee_limit_cents=int(self.credit_committee_limit_cents),
        )


class RiskConfigProvider:
    """TTL-cached lookup of the active :class:`RiskConfiguration`.

    The database is hit at most once per ``ttl_seconds``. Any failure falls
    back to the last good value, or to *base* when nothing was cached yet, so
    evaluation never blocks on a configuration outage.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        base: RiskConfiguration = DEFAULT_RISK_CONFIG,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._base = base
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: RiskConfiguration | None = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> RiskConfiguration:
        now = self._clock()
        with self._lock:
            if self._cached is not None and now - self._cached_at < self._ttl:
                return self._cached

        if self._session_factory is None:
            return self._base

        try:
            with self._session_factory() as session:
                row = session.exec(
                    select(RiskParameters).where(RiskParameters.is_active == True)  # noqa: E712
                ).first()
        except Exception:
            logger.exception("risk configuration lookup failed; using fallback")
            capital_config_fallbacks_total.inc()
            with self._lock:
                return self._cached or self._base

        if row is None:
            logger.warning("no active risk parameters row; using defaults")
            capital_config_fallbacks_total.inc()
            config = self._base
        else:
            config = row.to_config(self._base)

        with self._lock:
            self._cached = config
            self._cached_at = now
        return config

    def invalidate(self) -> None:
        """Force the next :meth:`get` to re-read the database."""
        with self._lock:
            self._cached = None
            self._cached_at = 0.0
