from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from .errors import InvalidTransition, NotFound, StoreError, ValidationError
from .models import CONTAINER_STATES, EventKind, EventRow, HostRow, L1Row, NodeRow, NodeStatus

logger = logging.getLogger(__name__)

# Sentinel for Store.transition: leave container_id untouched.
KEEP = object()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted file path does not exist, Docker creates a *directory* at that
    location. When the configured path is a directory we place the DB file inside it.
    """
    if db_path == ":memory:":
        raise StoreError("in-memory databases are not supported; every call opens its own connection")

    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "avalauncher.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


SCHEMA = """
CREATE TABLE IF NOT EXISTS hosts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  address TEXT NOT NULL,
  capacity INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  image TEXT NOT NULL,
  node_id TEXT,
  staking_port INTEGER NOT NULL,
  http_port INTEGER NOT NULL,
  status TEXT NOT NULL, -- created|starting|running|stopping|stopped|deleting|deleted|error
  host_id INTEGER,
  container_id TEXT,
  version INTEGER NOT NULL DEFAULT 0, -- bumped on every status or reference change
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(host_id) REFERENCES hosts(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS l1s (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  node_ref INTEGER NOT NULL,
  subnet_id TEXT NOT NULL,
  metadata TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  UNIQUE(node_ref, subnet_id),
  FOREIGN KEY(node_ref) REFERENCES nodes(id)
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  node_ref INTEGER,
  kind TEXT NOT NULL,
  detail TEXT NOT NULL,
  FOREIGN KEY(node_ref) REFERENCES nodes(id)
);

-- Deleted nodes are retained for audit, so names only need to be unique among live ones.
CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_live_name ON nodes(name) WHERE status != 'deleted';
CREATE INDEX IF NOT EXISTS idx_nodes_host_id ON nodes(host_id);
CREATE INDEX IF NOT EXISTS idx_l1s_node_ref ON l1s(node_ref);
CREATE INDEX IF NOT EXISTS idx_events_node_ref ON events(node_ref);
"""


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


class Store:
    """SQLite-backed persistence for hosts, nodes, L1 bindings and events.

    Every public method runs in its own connection and transaction, so a single call is
    either fully committed or not at all.
    """

    def __init__(self, db_path: str):
        self.db_path = _resolve_db_path(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            with conn:
                yield conn
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"constraint violated: {e}") from e
        except sqlite3.Error as e:
            raise StoreError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        with self.connect() as conn:
            # Table names are constants, not user input.
            for table in ("hosts", "nodes", "l1s", "events"):
                out[table] = conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
        return out

    # -- hosts ---------------------------------------------------------------

    def insert_host(self, name: str, address: str, capacity: int = 0) -> HostRow:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO hosts (name, address, capacity, created_at) VALUES (?, ?, ?, ?)",
                (name, address, capacity, utc_now()),
            )
            row = conn.execute("SELECT * FROM hosts WHERE id=?", (cur.lastrowid,)).fetchone()
            return HostRow(**dict(row))

    def get_host(self, host_id: int) -> HostRow | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM hosts WHERE id=?", (host_id,)).fetchone()
            return HostRow(**dict(row)) if row else None

    def get_host_by_name(self, name: str) -> HostRow | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM hosts WHERE name=?", (name,)).fetchone()
            return HostRow(**dict(row)) if row else None

    def list_hosts(self) -> list[HostRow]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM hosts ORDER BY id").fetchall()
            return _rows_to_dataclass(rows, HostRow)

    def delete_host(self, host_id: int) -> None:
        """Remove a host with no live nodes.

        Retained (deleted) node records are detached via ON DELETE SET NULL.
        """
        with self.connect() as conn:
            live = conn.execute(
                "SELECT count(*) FROM nodes WHERE host_id=? AND status != ?",
                (host_id, NodeStatus.DELETED.value),
            ).fetchone()[0]
            if live:
                raise InvalidTransition(f"host {host_id} still has {live} node(s)")
            cur = conn.execute("DELETE FROM hosts WHERE id=?", (host_id,))
            if cur.rowcount == 0:
                raise NotFound(f"host {host_id} not found")

    # -- nodes ---------------------------------------------------------------

    def insert_node(
        self,
        name: str,
        image: str,
        staking_port: int,
        http_port: int,
        host_id: int,
        node_id: str | None = None,
    ) -> NodeRow:
        """Insert a node in ``created`` status together with its ``created`` event."""
        now = utc_now()
        with self.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO nodes (name, image, node_id, staking_port, http_port, status, host_id, container_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (name, image, node_id, staking_port, http_port, NodeStatus.CREATED.value, host_id, now, now),
            )
            node_ref = cur.lastrowid
            self._insert_event(conn, node_ref, EventKind.CREATED, f"node {name} created from {image}")
            row = conn.execute("SELECT * FROM nodes WHERE id=?", (node_ref,)).fetchone()
            return NodeRow(**dict(row))

    def get_node(self, node_ref: int) -> NodeRow | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM nodes WHERE id=?", (node_ref,)).fetchone()
            return NodeRow(**dict(row)) if row else None

    def get_node_by_name(self, name: str) -> NodeRow | None:
        """Return the live (non-deleted) node with this name."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM nodes WHERE name=? AND status != ?",
                (name, NodeStatus.DELETED.value),
            ).fetchone()
            return NodeRow(**dict(row)) if row else None

    def list_nodes(self, statuses: Iterable[NodeStatus] | None = None) -> list[NodeRow]:
        with self.connect() as conn:
            if statuses is None:
                rows = conn.execute("SELECT * FROM nodes ORDER BY id").fetchall()
            else:
                wanted = [NodeStatus(s).value for s in statuses]
                if not wanted:
                    return []
                marks = ",".join("?" for _ in wanted)
                rows = conn.execute(f"SELECT * FROM nodes WHERE status IN ({marks}) ORDER BY id", wanted).fetchall()
            return _rows_to_dataclass(rows, NodeRow)

    def set_node_identity(self, node_ref: int, node_id: str) -> NodeRow:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE nodes SET node_id=?, updated_at=? WHERE id=?",
                (node_id, utc_now(), node_ref),
            )
            if cur.rowcount == 0:
                raise NotFound(f"node {node_ref} not found")
            row = conn.execute("SELECT * FROM nodes WHERE id=?", (node_ref,)).fetchone()
            return NodeRow(**dict(row))

    def set_container_ref(self, node_ref: int, expected: NodeStatus, container_id: str) -> bool:
        """Refresh the cached container reference without changing status.

        Returns False when the node is no longer in ``expected``.
        """
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE nodes SET container_id=?, version=version+1, updated_at=? WHERE id=? AND status=?",
                (container_id, utc_now(), node_ref, NodeStatus(expected).value),
            )
            return cur.rowcount == 1

    def transition(
        self,
        node_ref: int,
        expected: NodeStatus,
        status: NodeStatus,
        container_id: Any = KEEP,
        event: tuple[EventKind, str] | None = None,
        drop_bindings: bool = False,
    ) -> NodeRow:
        """Atomically move a node from ``expected`` to ``status``.

        The status update, the optional container reference change, the optional removal
        of the node's L1 bindings and the optional event are one transaction; the event
        is inserted after the update. Raises
        InvalidTransition if the stored status is no longer ``expected``.
        """
        expected = NodeStatus(expected)
        status = NodeStatus(status)
        with self.connect() as conn:
            # Take the write lock before reading so the compare and the set see the same row.
            conn.execute("BEGIN IMMEDIATE")
            current = conn.execute("SELECT * FROM nodes WHERE id=?", (node_ref,)).fetchone()
            if current is None:
                raise NotFound(f"node {node_ref} not found")
            if current["status"] != expected.value:
                raise InvalidTransition(
                    f"node {node_ref} expected {expected.value}, cannot move to {status.value}",
                    status=current["status"],
                )

            ref = current["container_id"] if container_id is KEEP else container_id
            if status not in CONTAINER_STATES:
                ref = None

            conn.execute(
                "UPDATE nodes SET status=?, container_id=?, version=version+1, updated_at=? WHERE id=? AND status=?",
                (status.value, ref, utc_now(), node_ref, expected.value),
            )
            if drop_bindings:
                conn.execute("DELETE FROM l1s WHERE node_ref=?", (node_ref,))
            if event is not None:
                kind, detail = event
                self._insert_event(conn, node_ref, kind, detail)
            row = conn.execute("SELECT * FROM nodes WHERE id=?", (node_ref,)).fetchone()
            return NodeRow(**dict(row))

    # -- L1 bindings ---------------------------------------------------------

    def insert_l1(self, node_ref: int, subnet_id: str, metadata: dict[str, Any] | None = None) -> L1Row:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO l1s (node_ref, subnet_id, metadata, created_at) VALUES (?, ?, ?, ?)",
                (node_ref, subnet_id, json.dumps(metadata or {}, sort_keys=True), utc_now()),
            )
            row = conn.execute("SELECT * FROM l1s WHERE id=?", (cur.lastrowid,)).fetchone()
            return L1Row(**dict(row))

    def list_l1s(self, node_ref: int | None = None) -> list[L1Row]:
        with self.connect() as conn:
            if node_ref is None:
                rows = conn.execute("SELECT * FROM l1s ORDER BY id").fetchall()
            else:
                rows = conn.execute("SELECT * FROM l1s WHERE node_ref=? ORDER BY id", (node_ref,)).fetchall()
            return _rows_to_dataclass(rows, L1Row)

    def delete_l1(self, binding_id: int) -> None:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM l1s WHERE id=?", (binding_id,))
            if cur.rowcount == 0:
                raise NotFound(f"l1 binding {binding_id} not found")

    # -- events --------------------------------------------------------------

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, node_ref: int | None, kind: EventKind, detail: str) -> None:
        conn.execute(
            "INSERT INTO events (ts, node_ref, kind, detail) VALUES (?, ?, ?, ?)",
            (utc_now(), node_ref, EventKind(kind).value, detail),
        )

    def append_event(self, kind: EventKind, detail: str, node_ref: int | None = None) -> None:
        with self.connect() as conn:
            self._insert_event(conn, node_ref, kind, detail)

    def latest_events(self, limit: int = 50) -> list[EventRow]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return _rows_to_dataclass(rows, EventRow)
