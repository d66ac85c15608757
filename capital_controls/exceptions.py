"""Error taxonomy for the capital controls engine."""
from __future__ import annotations

from typing import TYPE_CHECKING, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .models import ActionKey, ControlDecision


class CapitalControlsError(Exception):
    """Base class for all engine errors."""


class StoreUnavailableError(CapitalControlsError):
    """Raised by storage adapters when the backing store cannot be reached."""


class OverrideValidationError(CapitalControlsError, ValueError):
    """Raised when an override request fails validation. Nothing is written."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors: Tuple[str, ...] = tuple(errors)
        super().__init__("; ".join(self.errors))


class OverrideAuthorizationError(CapitalControlsError, PermissionError):
    """Raised when the acting role may not revoke overrides."""


class OverrideNotFoundError(CapitalControlsError, LookupError):
    """Raised when an override id is unknown."""


class OverrideStateError(CapitalControlsError):
    """Raised when an override is not in a state that allows the transition."""


class CapitalControlBlockedError(CapitalControlsError):
    """Raised by the action gate when the effective decision blocks an action."""

    def __init__(self, action_key: "ActionKey", decision: "ControlDecision") -> None:
        self.action_key = action_key
        self.decision = decision
        reasons = "; ".join(decision.reasons)
        super().__init__(
            f"Action {action_key.value} is blocked under mode {decision.mode.value}. "
            f"Reasons: {reasons}"
        )


class SnapshotComputationError(CapitalControlsError, ArithmeticError):
    """Raised when snapshot arithmetic overflows to a non-finite figure."""
