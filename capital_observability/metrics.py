# capital_observability/metrics.py
"""
Prometheus metrics for the capital controls engine.

❗️This module does NOT start a standalone HTTP server.
Host applications expose metrics by mounting the ASGI exporter:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())

If you need a sidecar server (e.g., for the operator CLI), set
METRICS_HTTP_SERVER=1 and call maybe_start_http_server() explicitly.
"""
from __future__ import annotations

import os
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Gauge, start_http_server

# ----------------------------
# Optional standalone server
# ----------------------------
_METRICS_PORT = int(os.getenv("METRICS_PORT", "8001"))
_server_started = False
_server_lock = threading.Lock()


def maybe_start_http_server() -> None:
    """
    Start a sidecar metrics HTTP server exactly once,
    but only if METRICS_HTTP_SERVER=1 is set in the environment.
    """
    global _server_started
    if _server_started or os.getenv("METRICS_HTTP_SERVER") != "1":
        return
    with _server_lock:
        if not _server_started and os.getenv("METRICS_HTTP_SERVER") == "1":
            start_http_server(_METRICS_PORT)
            _server_started = True


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Snapshot / decision gauges
# ----------------------------

capital_control_mode_severity = get_metric(
    Gauge,
    "capital_control_mode_severity",
    "Severity index of the current control mode (0=NORMAL .. 4=EMERGENCY_HALT)",
)

capital_hardstop_utilization = get_metric(
    Gauge,
    "capital_hardstop_utilization",
    "Gross exposure divided by hardstop limit",
)

capital_ecr_ratio = get_metric(
    Gauge,
    "capital_ecr_ratio",
    "Exposure-to-capital ratio",
)

# ----------------------------
# Event counters
# ----------------------------

capital_breach_events_total = get_metric(
    Counter,
    "capital_breach_events_total",
    "Number of new breach events persisted",
    ["type", "level"],
)

capital_override_actions_total = get_metric(
    Counter,
    "capital_override_actions_total",
    "Override governance actions by outcome",
    ["action", "outcome"],
)

capital_actions_blocked_total = get_metric(
    Counter,
    "capital_actions_blocked_total",
    "Mutating actions rejected by the capital control gate",
    ["action_key", "mode"],
)

capital_audit_failures_total = get_metric(
    Counter,
    "capital_audit_failures_total",
    "Audit records that could not be written",
    ["action"],
)

capital_config_fallbacks_total = get_metric(
    Counter,
    "capital_config_fallbacks_total",
    "Risk configuration lookups that fell back to compiled defaults",
)

capital_evaluation_failures_total = get_metric(
    Counter,
    "capital_evaluation_failures_total",
    "Control evaluations that failed closed",
    ["stage"],
)
