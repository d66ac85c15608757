import datetime as _dt

import pytest

from capital_controls.breach import (breach_candidates, breach_event_id,
                                     evaluate_breach_events)
from capital_controls.exceptions import StoreUnavailableError
from capital_controls.fingerprint import fingerprint, fnv1a_32
from capital_controls.models import BreachEventType, EventLevel
from capital_controls.store import InMemoryBreachEventStore
from conftest import NOW, make_snapshot


@pytest.mark.parametrize(
    "data,expected",
    [
        ("", "811c9dc5"),
        ("a", "e40c292c"),
        ("foobar", "bf9cf968"),
    ],
)
def test_fnv1a_32_reference_vectors(data, expected):
    assert fnv1a_32(data) == expected


def test_fingerprint_joins_enum_values():
    assert fingerprint([BreachEventType.ECR_BREACH, "x"], prefix="p-") == "p-" + fnv1a_32("ECR_BREACH|x")


def test_event_id_stable_within_minute():
    a = make_snapshot(hu=0.98, as_of=NOW.replace(second=1))
    b = make_snapshot(hu=0.98, as_of=NOW.replace(second=59))
    c = make_snapshot(hu=0.98, as_of=NOW + _dt.timedelta(minutes=1))
    t = BreachEventType.HARDSTOP_BREACH

    assert breach_event_id(t, a) == breach_event_id(t, b)
    assert breach_event_id(t, a) != breach_event_id(t, c)
    assert breach_event_id(t, a).startswith("brch-")
    assert len(breach_event_id(t, a)) == len("brch-") + 8


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        ({"ecr": 9.7}, [(BreachEventType.ECR_BREACH, EventLevel.CRITICAL)]),
        ({"ecr": 8.1}, [(BreachEventType.ECR_CAUTION, EventLevel.WARN)]),
        ({"hu": 0.96}, [(BreachEventType.HARDSTOP_BREACH, EventLevel.CRITICAL)]),
        ({"hu": 0.81}, [(BreachEventType.HARDSTOP_CAUTION, EventLevel.WARN)]),
        ({"buffer": -1.0}, [(BreachEventType.BUFFER_NEGATIVE, EventLevel.WARN)]),
        ({"hu": 0.5, "ecr": 1.0}, []),
        (
            {"ecr": 10.0, "hu": 0.99, "buffer": -3.0},
            [
                (BreachEventType.ECR_BREACH, EventLevel.CRITICAL),
                (BreachEventType.HARDSTOP_BREACH, EventLevel.CRITICAL),
                (BreachEventType.BUFFER_NEGATIVE, EventLevel.WARN),
            ],
        ),
    ],
)
def test_breach_candidates(kwargs, expected):
    got = [(t, lvl) for t, lvl, _ in breach_candidates(make_snapshot(**kwargs))]
    assert got == expected


def test_new_events_persisted_and_audited(breach_store, audit, audit_sink):
    snap = make_snapshot(hu=0.98)
    events = evaluate_breach_events(snap, breach_store, audit=audit)

    assert [e.type for e in events] == [BreachEventType.HARDSTOP_BREACH]
    assert breach_store.has(events[0].id)
    assert len(audit_sink.records) == 1
    rec = audit_sink.records[0]
    assert rec.action == "CAPITAL_BREACH_DETECTED"
    assert rec.severity == "critical"
    assert rec.metadata["top_driver_ids"] == "O1"


def test_repeat_sweep_is_noop(breach_store, audit, audit_sink):
    snap = make_snapshot(hu=0.98)
    first = evaluate_breach_events(snap, breach_store, audit=audit)
    second = evaluate_breach_events(snap, breach_store, audit=audit)

    assert len(first) == 1
    assert second == []
    assert len(breach_store.list_events()) == 1
    assert len(audit_sink.records) == 1


class _RacingStore(InMemoryBreachEventStore):
    """Another sweep appends the same id between ``has`` and ``append``."""

    def append(self, event):
        super().append(event)
        return False


def test_lost_append_race_not_audited(audit, audit_sink):
    events = evaluate_breach_events(make_snapshot(hu=0.98), _RacingStore(), audit=audit)
    assert events == []
    assert audit_sink.records == []


class _DownStore(InMemoryBreachEventStore):
    def has(self, event_id):
        raise StoreUnavailableError("db down")


def test_store_unavailable_does_not_raise(audit, audit_sink):
    events = evaluate_breach_events(make_snapshot(hu=0.98, buffer=-1.0), _DownStore(), audit=audit)
    assert events == []
    assert audit_sink.records == []


class _FlakyStore(InMemoryBreachEventStore):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def append(self, event):
        self.calls += 1
        if self.calls > 1:
            raise StoreUnavailableError("db down")
        return super().append(event)


def test_store_failure_returns_events_persisted_so_far():
    events = evaluate_breach_events(make_snapshot(ecr=10.0, hu=0.99), _FlakyStore())
    assert [e.type for e in events] == [BreachEventType.ECR_BREACH]


def test_audit_failure_does_not_roll_back(breach_store):
    from capital_controls.audit import AuditEmitter

    class _Broken:
        def write(self, record):
            raise RuntimeError("journal down")

    events = evaluate_breach_events(make_snapshot(hu=0.98), breach_store, audit=AuditEmitter(_Broken()))
    assert len(events) == 1
    assert breach_store.has(events[0].id)
