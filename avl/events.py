from __future__ import annotations

import logging
from typing import Any

from .db import Store
from .models import EventKind, EventRow
from .settings import settings

logger = logging.getLogger(__name__)

_LEVELS = {
    EventKind.ERROR: logging.ERROR,
    EventKind.DRIFT_CORRECTED: logging.WARNING,
}


def coerce_limit(raw: Any, default: int | None = None, maximum: int | None = None) -> int:
    """Parse an events limit leniently.

    Missing, non-numeric and non-positive values fall back to ``default`` instead of
    being rejected; large values are capped at ``maximum``.
    """
    default = settings.events_default_limit if default is None else default
    maximum = settings.events_max_limit if maximum is None else maximum
    if raw is None or isinstance(raw, bool):
        return default
    try:
        n = int(str(raw).strip())
    except ValueError:
        return default
    if n <= 0:
        return default
    return min(n, maximum)


def log_transition(kind: EventKind, detail: str, node_ref: int | None = None) -> None:
    where = f"node {node_ref}" if node_ref is not None else "host"
    logger.log(_LEVELS.get(EventKind(kind), logging.INFO), f"[{EventKind(kind).value}] {where}: {detail}")


class EventRecorder:
    """Append-only audit trail.

    Transition events are written by :meth:`Store.transition` inside the status
    transaction; this recorder covers standalone events and reads.
    """

    def __init__(self, store: Store):
        self.store = store

    def record(self, kind: EventKind, detail: str, node_ref: int | None = None) -> None:
        self.store.append_event(kind, detail, node_ref=node_ref)
        log_transition(kind, detail, node_ref)

    def list(self, limit: Any = None) -> list[EventRow]:
        return self.store.latest_events(coerce_limit(limit))
