"""Deterministic capital-adequacy controls.

Snapshot -> breach events -> control decision -> overrides -> action gate,
plus the per-transaction risk index (TRI) and policy checks.
"""

from .breach import evaluate_breach_events
from .config import DEFAULT_RISK_CONFIG, RiskConfigProvider, RiskConfiguration
from .controls import apply_overrides, evaluate_controls, most_restrictive_decision
from .exceptions import (CapitalControlBlockedError, CapitalControlsError,
                         OverrideAuthorizationError, OverrideNotFoundError,
                         OverrideStateError, OverrideValidationError,
                         StoreUnavailableError)
from .models import ActionKey, BreachLevel, ControlMode
from .overrides import OverrideGovernor, OverrideRequest
from .service import CapitalControlService
from .snapshot import compute_snapshot
from .tri import (build_policy_snapshot, check_blockers, compute_tri,
                  determine_approval, run_compliance_checks, validate_capital)

__all__ = [
    "ActionKey",
    "BreachLevel",
    "ControlMode",
    "RiskConfiguration",
    "RiskConfigProvider",
    "DEFAULT_RISK_CONFIG",
    "compute_snapshot",
    "evaluate_breach_events",
    "evaluate_controls",
    "apply_overrides",
    "most_restrictive_decision",
    "OverrideGovernor",
    "OverrideRequest",
    "CapitalControlService",
    "compute_tri",
    "check_blockers",
    "determine_approval",
    "run_compliance_checks",
    "validate_capital",
    "build_policy_snapshot",
    "CapitalControlsError",
    "CapitalControlBlockedError",
    "OverrideValidationError",
    "OverrideAuthorizationError",
    "OverrideNotFoundError",
    "OverrideStateError",
    "StoreUnavailableError",
]
