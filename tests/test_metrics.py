from prometheus_client import REGISTRY, Counter

from capital_controls.breach import evaluate_breach_events
from capital_controls.controls import evaluate_controls, publish_decision_metrics
from capital_observability.metrics import get_metric
from conftest import make_snapshot


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_get_metric_returns_same_collector():
    a = get_metric(Counter, "capital_test_registration_total", "test counter")
    b = get_metric(Counter, "capital_test_registration_total", "test counter")
    assert a is b


def test_breach_counter_increments_once_per_new_event(breach_store):
    labels = {"type": "HARDSTOP_BREACH", "level": "CRITICAL"}
    before = _sample("capital_breach_events_total", **labels)

    snap = make_snapshot(hu=0.98)
    evaluate_breach_events(snap, breach_store)
    evaluate_breach_events(snap, breach_store)

    assert _sample("capital_breach_events_total", **labels) == before + 1


def test_decision_gauges_published():
    snap = make_snapshot(hu=0.97, ecr=2.5)
    publish_decision_metrics(snap, evaluate_controls(snap, []))

    assert _sample("capital_control_mode_severity") == 3
    assert _sample("capital_hardstop_utilization") == 0.97
    assert _sample("capital_ecr_ratio") == 2.5
