import datetime as _dt
from typing import Iterable, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from capital_controls.audit import AuditEmitter, MemoryAuditSink
from capital_controls.config import DEFAULT_RISK_CONFIG
from capital_controls.controls import block_matrix
from capital_controls.models import (CapitalBase, CapitalSnapshot,
                                     ControlDecision, ControlLimits,
                                     ControlMode, Driver, ExposureState,
                                     SettlementCase, SettlementStatus)
from capital_controls.snapshot import classify_breach
from capital_controls.store import InMemoryBreachEventStore, InMemoryOverrideStore
from capital_controls.store import init_db as init_engine_tables
from common.audit import init_db as init_audit_journal

NOW = _dt.datetime(2026, 3, 2, 14, 30, 15, tzinfo=_dt.timezone.utc)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_state(
    *,
    capital_base: float = 100_000_000,
    hardstop_limit: float = 50_000_000,
    tvar99: float = 0.0,
    open_settlement: float = 0.0,
    now: _dt.datetime = NOW,
    **lists,
) -> ExposureState:
    """Exposure state whose gross exposure is a single open settlement."""
    settlements = list(lists.pop("settlements", []))
    if open_settlement:
        settlements.append(
            SettlementCase(
                id="stl-open",
                status=SettlementStatus.ESCROW_OPEN,
                notional_usd=open_settlement,
                weight_oz=100,
                updated_at=now,
            )
        )
    return ExposureState(
        capital=CapitalBase(capital_base=capital_base, hardstop_limit=hardstop_limit, tvar99=tvar99),
        settlements=settlements,
        now=now,
        **lists,
    )


def make_snapshot(
    *,
    ecr: float = 1.0,
    hu: float = 0.5,
    buffer: float = 1_000_000.0,
    hardstop_limit: float = 100.0,
    capital_base: float = 100.0,
    drivers: Optional[Iterable[Driver]] = None,
    as_of: _dt.datetime = NOW,
) -> CapitalSnapshot:
    """Snapshot with chosen ratios; breach level derived from them."""
    level, reasons = classify_breach(ecr, hu, buffer, DEFAULT_RISK_CONFIG)
    if drivers is None:
        drivers = [Driver(label="Order O1", value=10.0, id="O1", source="order")]
    return CapitalSnapshot(
        as_of=as_of,
        capital_base=capital_base,
        hardstop_limit=hardstop_limit,
        gross_exposure_notional=hu * hardstop_limit,
        reserved_notional=0.0,
        allocated_notional=0.0,
        settlement_notional_open=hu * hardstop_limit,
        settled_notional_today=0.0,
        ecr=ecr,
        hardstop_utilization=hu,
        buffer_vs_tvar99=buffer,
        breach_level=level,
        breach_reasons=reasons,
        top_drivers=tuple(drivers),
    )


def decision_for(mode: ControlMode, *, snapshot_hash: str = "abcd1234") -> ControlDecision:
    return ControlDecision(
        as_of=NOW,
        mode=mode,
        reasons=(),
        blocks=block_matrix(mode),
        limits=ControlLimits(),
        snapshot_hash=snapshot_hash,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def now() -> _dt.datetime:
    return NOW


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_engine_tables(eng)
    init_audit_journal(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture()
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture()
def audit(audit_sink) -> AuditEmitter:
    return AuditEmitter(audit_sink)


@pytest.fixture()
def breach_store() -> InMemoryBreachEventStore:
    return InMemoryBreachEventStore()


@pytest.fixture()
def override_store() -> InMemoryOverrideStore:
    return InMemoryOverrideStore()

