"""Operator CLI for the capital controls engine.

Usage:
    python -m capital_controls.cli snapshot state.json
    python -m capital_controls.cli evaluate state.json --db sqlite:///./.data/capital.db
    python -m capital_controls.cli check CREATE_RESERVATION state.json --user u-1
    python -m capital_controls.cli tri txn.json

``state.json`` holds an :class:`ExposureState` (capital, reservations, orders,
inventory, settlements, now). ``txn.json`` holds ``counterparty``,
``corridor``, ``hub``, ``amount`` and ``position``.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence

from sqlmodel import Session

from capital_observability.metrics import maybe_start_http_server
from common import audit as audit_journal
from common.logging import configure_logging

from .audit import AuditEmitter, JournalAuditSink, MemoryAuditSink
from .config import RiskConfigProvider, RiskConfiguration, load_config_file
from .exceptions import CapitalControlBlockedError
from .models import (ActionKey, CapitalPosition, Corridor, Counterparty,
                     ExposureState, Hub)
from .service import CapitalControlService
from .store import (InMemoryBreachEventStore, InMemoryOverrideStore,
                    SqlBreachEventStore, SqlOverrideStore, init_db)
from .tri import build_policy_snapshot


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj):
        return asdict(obj)
    if hasattr(obj, "items"):
        return dict(obj.items())
    raise TypeError(f"not JSON serialisable: {type(obj).__name__}")


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=_json_default, ensure_ascii=False))


def _read_json(path: str) -> Any:
    with Path(path).open(encoding="utf-8") as fh:
        return json.load(fh)


def _load_state(path: str) -> ExposureState:
    return ExposureState.model_validate(_read_json(path))


def build_service(db_url: Optional[str], config: RiskConfiguration) -> CapitalControlService:
    """Service over SQL stores when *db_url* is given, in-memory otherwise."""
    if not db_url:
        return CapitalControlService(
            InMemoryBreachEventStore(),
            InMemoryOverrideStore(),
            config=config,
            audit=AuditEmitter(MemoryAuditSink()),
        )
    engine = audit_journal.make_engine(db_url)
    init_db(engine)
    audit_journal.init_db(engine)

    def factory() -> Session:
        return Session(engine)

    return CapitalControlService(
        SqlBreachEventStore(factory),
        SqlOverrideStore(factory),
        config=RiskConfigProvider(factory, base=config),
        audit=AuditEmitter(JournalAuditSink(factory)),
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="capital-controls", description="Capital controls engine")
    ap.add_argument("--config", help="JSON risk configuration file (defaults to RISK_CONFIG_PATH)")
    ap.add_argument("--log-format", choices=["text", "json"], help="log output format")
    sub = ap.add_subparsers(dest="command", required=True)

    p_snap = sub.add_parser("snapshot", help="compute the capital snapshot")
    p_snap.add_argument("state", help="exposure state JSON file")

    p_eval = sub.add_parser("evaluate", help="run a breach sweep and print the control decision")
    p_eval.add_argument("state", help="exposure state JSON file")
    p_eval.add_argument("--db", default=os.getenv("RISK_DB_URL"), help="SQLAlchemy URL for breach/override/audit tables")

    p_check = sub.add_parser("check", help="gate a single action against the effective decision")
    p_check.add_argument("action", choices=[k.value for k in ActionKey])
    p_check.add_argument("state", help="exposure state JSON file")
    p_check.add_argument("--db", default=os.getenv("RISK_DB_URL"), help="SQLAlchemy URL for breach/override/audit tables")
    p_check.add_argument("--role", help="acting role")
    p_check.add_argument("--user", help="acting user id")

    p_tri = sub.add_parser("tri", help="score a transaction and run policy checks")
    p_tri.add_argument("txn", help="transaction JSON file")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_format, service_name="capital_controls", stream=sys.stderr)
    maybe_start_http_server()
    config = load_config_file(args.config)

    if args.command == "snapshot":
        service = build_service(None, config)
        _dump(service.snapshot(_load_state(args.state)).as_dict())
        return 0

    if args.command == "evaluate":
        service = build_service(args.db, config)
        result = service.run_sweep(_load_state(args.state))
        _dump({
            "snapshot": result.snapshot.as_dict(),
            "decision": result.decision.as_dict(),
            "new_events": [e.id for e in result.new_events],
            "history_available": result.history_available,
        })
        return 0

    if args.command == "check":
        service = build_service(args.db, config)
        try:
            decision = service.check_action(
                ActionKey(args.action),
                _load_state(args.state),
                actor_role=args.role,
                actor_user_id=args.user,
            )
        except CapitalControlBlockedError as exc:
            print(f"BLOCKED: {exc}", file=sys.stderr)
            return 2
        _dump({"allowed": True, "mode": decision.mode.value})
        return 0

    data = _read_json(args.txn)
    snap = build_policy_snapshot(
        Counterparty.model_validate(data["counterparty"]),
        Corridor.model_validate(data["corridor"]),
        Hub.model_validate(data["hub"]),
        float(data["amount"]),
        CapitalPosition.model_validate(data["position"]),
        config,
    )
    _dump({**asdict(snap), "blocked": snap.blocked})
    return 0


if __name__ == "__main__":
    sys.exit(main())
