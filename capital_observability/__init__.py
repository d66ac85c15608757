"""Prometheus metrics for the capital controls engine."""

from .metrics import (capital_breach_events_total, capital_control_mode_severity,
                      capital_ecr_ratio, capital_hardstop_utilization)

__all__ = [
    "capital_control_mode_severity",
    "capital_hardstop_utilization",
    "capital_ecr_ratio",
    "capital_breach_events_total",
]
