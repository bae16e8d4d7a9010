import logging

import pytest

from avl.events import EventRecorder, coerce_limit, log_transition
from avl.models import EventKind


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, 50),
        ("", 50),
        ("abc", 50),
        ("0", 50),
        (-3, 50),
        (True, 50),
        ("7", 7),
        (" 12 ", 12),
        (20, 20),
        ("100000", 1000),
    ],
)
def test_coerce_limit(raw, expected):
    assert coerce_limit(raw, default=50, maximum=1000) == expected


def test_recorder_round_trip(store):
    rec = EventRecorder(store)
    rec.record(EventKind.ERROR, "host unreachable")
    rec.record(EventKind.STARTED, "container abc running")
    events = rec.list("1")
    assert len(events) == 1
    assert events[0].kind == "started"
    assert events[0].node_ref is None
    assert [e.kind for e in rec.list(None)] == ["started", "error"]


def test_log_levels_follow_event_kind(caplog):
    caplog.set_level(logging.INFO, logger="avl.events")
    log_transition(EventKind.ERROR, "start failed", 4)
    log_transition(EventKind.DRIFT_CORRECTED, "running -> stopped", 4)
    log_transition(EventKind.STARTED, "ok", 4)
    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels == [
        (logging.ERROR, "[error] node 4: start failed"),
        (logging.WARNING, "[drift-corrected] node 4: running -> stopped"),
        (logging.INFO, "[started] node 4: ok"),
    ]
