"""Storage interfaces for breach events and overrides.

Evaluators never reach for ambient state: a :class:`BreachEventStore` and an
:class:`OverrideStore` are injected. Two implementations ship here:

* ``InMemory*`` – process-local, guarded by a lock; used in tests and as a
  cold-start default.
* ``Sql*`` – SQLModel tables (``capital_breach_events``,
  ``capital_overrides``) for durable state that survives restarts.

Both give the two guarantees the engine relies on: breach appends are atomic
insert-if-absent keyed by the content-addressed id, and override status
changes are compare-and-swap on a single row.
"""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import JSON, Column, DateTime, String, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, select

from common.datetime import parse_iso8601

from .config import RiskParameters
from .exceptions import StoreUnavailableError
from .models import (Actor, BreachEvent, BreachEventType, BreachLevel,
                     CapitalOverride, CapitalSnapshot, ControlMode, Driver,
                     EventLevel, OverrideStatus, scope_action_key,
                     scope_from_parts)

__all__ = [
    "BreachEventStore",
    "OverrideStore",
    "InMemoryBreachEventStore",
    "InMemoryOverrideStore",
    "SqlBreachEventStore",
    "SqlOverrideStore",
    "BreachEventRow",
    "OverrideRow",
    "init_db",
]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class BreachEventStore(Protocol):
    """Append-only breach history keyed by event id."""

    def append(self, event: BreachEvent) -> bool:
        """Persist *event*; ``False`` if the id already exists."""
        ...

    def has(self, event_id: str) -> bool:
        ...

    def list_events(self, since: Optional[datetime] = None) -> List[BreachEvent]:
        """Events ordered by ``occurred_at``, optionally ``>= since``."""
        ...


class OverrideStore(Protocol):
    """Override records keyed by override id."""

    def insert(self, override: CapitalOverride) -> bool:
        """Persist *override*; ``False`` if the id already exists."""
        ...

    def get(self, override_id: str) -> Optional[CapitalOverride]:
        ...

    def list_overrides(self) -> List[CapitalOverride]:
        ...

    def compare_and_set_status(
        self,
        override_id: str,
        expected: OverrideStatus,
        new: OverrideStatus,
        *,
        revoked_at: Optional[datetime] = None,
    ) -> Optional[CapitalOverride]:
        """Atomically move ``expected -> new``; ``None`` if the row is not in *expected*."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryBreachEventStore:
    def __init__(self) -> None:
        self._events: Dict[str, BreachEvent] = {}
        self._lock = threading.Lock()

    def append(self, event: BreachEvent) -> bool:
        with self._lock:
            if event.id in self._events:
                return False
            self._events[event.id] = event
            return True

    def has(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def list_events(self, since: Optional[datetime] = None) -> List[BreachEvent]:
        with self._lock:
            events = list(self._events.values())
        if since is not None:
            events = [e for e in events if e.occurred_at >= since]
        return sorted(events, key=lambda e: e.occurred_at)


class InMemoryOverrideStore:
    def __init__(self) -> None:
        self._rows: Dict[str, CapitalOverride] = {}
        self._lock = threading.Lock()

    def insert(self, override: CapitalOverride) -> bool:
        with self._lock:
            if override.id in self._rows:
                return False
            self._rows[override.id] = override
            return True

    def get(self, override_id: str) -> Optional[CapitalOverride]:
        with self._lock:
            return self._rows.get(override_id)

    def list_overrides(self) -> List[CapitalOverride]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda o: o.created_at)

    def compare_and_set_status(
        self,
        override_id: str,
        expected: OverrideStatus,
        new: OverrideStatus,
        *,
        revoked_at: Optional[datetime] = None,
    ) -> Optional[CapitalOverride]:
        with self._lock:
            current = self._rows.get(override_id)
            if current is None or current.status is not expected:
                return None
            updated = _replace_status(current, new, revoked_at)
            self._rows[override_id] = updated
            return updated


def _replace_status(
    ov: CapitalOverride, status: OverrideStatus, revoked_at: Optional[datetime]
) -> CapitalOverride:
    return replace(ov, status=status, revoked_at=revoked_at or ov.revoked_at)


# ---------------------------------------------------------------------------
# SQLModel tables
# ---------------------------------------------------------------------------


class BreachEventRow(SQLModel, table=True):
    """Append-only breach history. Rows are never updated or deleted."""

    __tablename__ = "capital_breach_events"

    id: str = Field(sa_column=Column("id", String, primary_key=True))
    occurred_at: datetime = Field(sa_column=Column("occurred_at", DateTime(timezone=True), nullable=False, index=True))
    type: str = Field(sa_column=Column("type", String, nullable=False))
    level: str = Field(sa_column=Column("level", String, nullable=False))
    message: str = Field(sa_column=Column("message", String, nullable=False))
    snapshot: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("snapshot", JSON, nullable=False))


class OverrideRow(SQLModel, table=True):
    """Capital control overrides. Only ``status``/``revoked_at`` ever change."""

    __tablename__ = "capital_overrides"

    id: str = Field(sa_column=Column("id", String, primary_key=True))
    scope: str = Field(sa_column=Column("scope", String, nullable=False))
    action_key: Optional[str] = Field(default=None, sa_column=Column("action_key", String))
    reason: str = Field(sa_column=Column("reason", String, nullable=False))
    expires_at: datetime = Field(sa_column=Column("expires_at", DateTime(timezone=True), nullable=False))
    status: str = Field(sa_column=Column("status", String, nullable=False, index=True))
    actor_role: str = Field(sa_column=Column("actor_role", String, nullable=False))
    actor_user_id: str = Field(sa_column=Column("actor_user_id", String, nullable=False))
    actor_name: str = Field(default="", sa_column=Column("actor_name", String, nullable=False))
    created_at: datetime = Field(sa_column=Column("created_at", DateTime(timezone=True), nullable=False))
    revoked_at: Optional[datetime] = Field(default=None, sa_column=Column("revoked_at", DateTime(timezone=True)))
    snapshot_hash: str = Field(default="", sa_column=Column("snapshot_hash", String, nullable=False))
    mode_at_creation: Optional[str] = Field(default=None, sa_column=Column("mode_at_creation", String))


def init_db(engine: Engine) -> None:
    """Create the engine tables (idempotent)."""
    SQLModel.metadata.create_all(
        engine, tables=[BreachEventRow.__table__, OverrideRow.__table__, RiskParameters.__table__]
    )


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------


def _snapshot_from_dict(data: Dict[str, Any]) -> CapitalSnapshot:
    return CapitalSnapshot(
        as_of=parse_iso8601(data["as_of"]),
        capital_base=float(data["capital_base"]),
        hardstop_limit=float(data["hardstop_limit"]),
        gross_exposure_notional=float(data["gross_exposure_notional"]),
        reserved_notional=float(data["reserved_notional"]),
        allocated_notional=float(data["allocated_notional"]),
        settlement_notional_open=float(data["settlement_notional_open"]),
        settled_notional_today=float(data["settled_notional_today"]),
        ecr=float(data["ecr"]),
        hardstop_utilization=float(data["hardstop_utilization"]),
        buffer_vs_tvar99=float(data["buffer_vs_tvar99"]),
        breach_level=BreachLevel(data["breach_level"]),
        breach_reasons=tuple(data.get("breach_reasons", ())),
        top_drivers=tuple(
            Driver(
                label=d["label"],
                value=float(d["value"]),
                id=d.get("id"),
                source=d.get("source", ""),
            )
            for d in data.get("top_drivers", ())
        ),
    )


def _event_to_row(event: BreachEvent) -> BreachEventRow:
    return BreachEventRow(
        id=event.id,
        occurred_at=event.occurred_at,
        type=event.type.value,
        level=event.level.value,
        message=event.message,
        snapshot=event.snapshot.as_dict(),
    )


def _row_to_event(row: BreachEventRow) -> BreachEvent:
    return BreachEvent(
        id=row.id,
        occurred_at=parse_iso8601(row.occurred_at),
        type=BreachEventType(row.type),
        level=EventLevel(row.level),
        message=row.message,
        snapshot=_snapshot_from_dict(row.snapshot),
    )


def _override_to_row(ov: CapitalOverride) -> OverrideRow:
    action_key = scope_action_key(ov.scope)
    return OverrideRow(
        id=ov.id,
        scope=ov.scope.kind,
        action_key=action_key.value if action_key else None,
        reason=ov.reason,
        expires_at=ov.expires_at,
        status=ov.status.value,
        actor_role=ov.actor.role,
        actor_user_id=ov.actor.user_id,
        actor_name=ov.actor.name,
        created_at=ov.created_at,
        revoked_at=ov.revoked_at,
        snapshot_hash=ov.snapshot_hash,
        mode_at_creation=ov.mode_at_creation.value if ov.mode_at_creation else None,
    )


def _row_to_override(row: OverrideRow) -> CapitalOverride:
    return CapitalOverride(
        id=row.id,
        scope=scope_from_parts(row.scope, row.action_key),
        reason=row.reason,
        expires_at=parse_iso8601(row.expires_at),
        status=OverrideStatus(row.status),
        actor=Actor(role=row.actor_role, user_id=row.actor_user_id, name=row.actor_name),
        created_at=parse_iso8601(row.created_at),
        snapshot_hash=row.snapshot_hash,
        mode_at_creation=ControlMode(row.mode_at_creation) if row.mode_at_creation else None,
        revoked_at=parse_iso8601(row.revoked_at) if row.revoked_at else None,
    )


# ---------------------------------------------------------------------------
# SQL implementations
# ---------------------------------------------------------------------------


class _SqlStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory


class SqlBreachEventStore(_SqlStore):
    def append(self, event: BreachEvent) -> bool:
        try:
            with self._session_factory() as session:
                session.add(_event_to_row(event))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"breach store append failed: {exc}") from exc

    def has(self, event_id: str) -> bool:
        try:
            with self._session_factory() as session:
                return session.get(BreachEventRow, event_id) is not None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"breach store read failed: {exc}") from exc

    def list_events(self, since: Optional[datetime] = None) -> List[BreachEvent]:
        stmt = select(BreachEventRow)
        if since is not None:
            stmt = stmt.where(BreachEventRow.occurred_at >= since)
        stmt = stmt.order_by(BreachEventRow.occurred_at)
        try:
            with self._session_factory() as session:
                rows = session.exec(stmt).all()
                return [_row_to_event(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"breach store read failed: {exc}") from exc


class SqlOverrideStore(_SqlStore):
    def insert(self, override: CapitalOverride) -> bool:
        try:
            with self._session_factory() as session:
                session.add(_override_to_row(override))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"override store insert failed: {exc}") from exc

    def get(self, override_id: str) -> Optional[CapitalOverride]:
        try:
            with self._session_factory() as session:
                row = session.get(OverrideRow, override_id)
                return _row_to_override(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"override store read failed: {exc}") from exc

    def list_overrides(self) -> List[CapitalOverride]:
        try:
            with self._session_factory() as session:
                rows = session.exec(select(OverrideRow).order_by(OverrideRow.created_at)).all()
                return [_row_to_override(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"override store read failed: {exc}") from exc

    def compare_and_set_status(
        self,
        override_id: str,
        expected: OverrideStatus,
        new: OverrideStatus,
        *,
        revoked_at: Optional[datetime] = None,
    ) -> Optional[CapitalOverride]:
        values: Dict[str, Any] = {"status": new.value}
        if revoked_at is not None:
            values["revoked_at"] = revoked_at
        stmt = (
            update(OverrideRow)
            .where(OverrideRow.id == override_id, OverrideRow.status == expected.value)
            .values(**values)
        )
        try:
            with self._session_factory() as session:
                result = session.connection().execute(stmt)
                session.commit()
                if result.rowcount != 1:
                    return None
                row = session.get(OverrideRow, override_id)
                return _row_to_override(row)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"override store update failed: {exc}") from exc
