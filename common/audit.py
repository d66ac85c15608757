"""Shared audit journal utilities.

Every governance-relevant state change appends an immutable row to the
``audit_journal`` table. Rows carry a caller-supplied ``event_id`` so that the
same logical event written twice (retries, concurrent sweeps) lands once.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, String
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

__all__ = [
    "AuditJournal",
    "get_engine",
    "init_db",
    "log_event",
    "make_engine",
]


# ---------------------------------------------------------------------------
# Database setup
# ---------------------------------------------------------------------------


AUDIT_DB_URL = os.getenv("AUDIT_DB_URL", "sqlite:///./.data/audit_journal.db")

_engine: Engine | None = None


class AuditJournal(SQLModel, table=True):
    """Immutable audit log for capital-control governance."""

    __tablename__ = "audit_journal"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Deterministic dedup key supplied by the emitter.
    event_id: str = Field(sa_column=Column(String, nullable=False, unique=True, index=True))

    # RFC3339 timestamp (UTC) when the action occurred.
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    # Name of the emitting subsystem e.g. "capital_controls"
    service: str = Field(sa_column=Column(String, nullable=False, index=True))

    # Authenticated user / system actor, free-form string (user id, role, etc.)
    actor: Optional[str] = None
    actor_role: Optional[str] = None

    # Action verb e.g. "CAPITAL_BREACH_DETECTED", "CAPITAL_OVERRIDE_REVOKED"
    action: str = Field(sa_column=Column(String, nullable=False))

    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    result: str = "SUCCESS"
    severity: str = "info"
    message: Optional[str] = None

    # JSON payload with additional structured context (schema per action)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False, default={})
    )


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False)


def get_engine() -> Engine:
    """Return the shared audit engine, creating it on first use."""

    global _engine
    if _engine is None:
        if AUDIT_DB_URL.startswith("sqlite:///./"):
            os.makedirs(os.path.dirname(AUDIT_DB_URL[len("sqlite:///"):]), exist_ok=True)
        _engine = make_engine(AUDIT_DB_URL)
        init_db(_engine)
    return _engine


def init_db(engine: Engine | None = None) -> None:
    """Idempotent table creation for local dev and during tests."""

    SQLModel.metadata.create_all(engine or get_engine(), tables=[AuditJournal.__table__])


def log_event(
    *,
    session: Session,
    event_id: str,
    service: str,
    action: str,
    actor: Optional[str] = None,
    actor_role: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    result: str = "SUCCESS",
    severity: str = "info",
    message: Optional[str] = None,
    ts: Optional[datetime] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """Insert a new audit record and commit immediately.

    Returns ``False`` when a row with the same *event_id* already exists, in
    which case nothing is written.

    Parameters
    ----------
    session: SQLModel Session bound to the audit engine.
    event_id: Deterministic identifier of the logical event.
    service: Name of the emitting subsystem.
    action: Action verb.
    actor: Who performed the action.
    details: JSON-serialisable dictionary with extra context.
    """

    existing = session.exec(
        select(AuditJournal.id).where(AuditJournal.event_id == event_id)
    ).first()
    if existing is not None:
        return False

    entry = AuditJournal(
        event_id=event_id,
        ts=ts or datetime.now(timezone.utc),
        service=service,
        action=action,
        actor=actor,
        actor_role=actor_role,
        resource_type=resource_type,
        resource_id=resource_id,
        result=result,
        severity=severity,
        message=message,
        details=details or {},
    )
    session.add(entry)
    try:
        session.commit()
    except IntegrityError:
        # lost an insert race on the unique event_id
        session.rollback()
        return False
    return True
