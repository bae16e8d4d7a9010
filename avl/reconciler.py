from __future__ import annotations

import logging
from threading import Event, Thread

from .errors import AvlError, NotFound
from .events import log_transition
from .health import fetch_node_id, rpc_host
from .manager import LifecycleManager
from .models import CONTAINER_STATES, RECONCILABLE, TRANSIENT, ContainerStatus, EventKind, NodeRow, NodeStatus

logger = logging.getLogger(__name__)

# (stored status, observed container status) -> (corrected status, detail)
DRIFT: dict[tuple[NodeStatus, ContainerStatus], tuple[NodeStatus, str]] = {
    (NodeStatus.RUNNING, ContainerStatus.EXITED): (NodeStatus.STOPPED, "container exited outside manager control"),
    (NodeStatus.RUNNING, ContainerStatus.MISSING): (NodeStatus.ERROR, "container disappeared while running"),
    (NodeStatus.STOPPED, ContainerStatus.RUNNING): (NodeStatus.RUNNING, "container started outside manager control"),
    (NodeStatus.STOPPED, ContainerStatus.MISSING): (NodeStatus.ERROR, "container removed outside manager control"),
}

# Where a node interrupted mid-transition settles, given what the runtime shows.
SETTLE: dict[ContainerStatus, NodeStatus] = {
    ContainerStatus.RUNNING: NodeStatus.RUNNING,
    ContainerStatus.EXITED: NodeStatus.STOPPED,
    ContainerStatus.MISSING: NodeStatus.ERROR,
}


class Reconciler:
    """Periodically compares stored node status with the runtime and corrects drift.

    Never waits on a node lock: a node busy with a user operation is skipped until the
    next pass.
    """

    def __init__(self, manager: LifecycleManager, interval_s: float | None = None, fetch_identity: bool | None = None):
        self.manager = manager
        self.store = manager.store
        self.interval_s = manager.cfg.reconcile_interval_s if interval_s is None else interval_s
        self.fetch_identity = manager.cfg.fetch_node_identity if fetch_identity is None else fetch_identity
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="avl-reconciler", daemon=True)
        self._thr.start()

    def stop(self, wait: float | None = None) -> None:
        self._stop.set()
        if wait is not None and self._thr is not None:
            self._thr.join(wait)

    def _loop(self) -> None:
        logger.info(f"Reconciler started (interval {self.interval_s}s)")
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Reconciler tick failed")
            self._stop.wait(max(1.0, float(self.interval_s)))
        logger.info("Reconciler stopped")

    def _tick(self) -> list[NodeRow]:
        # Retried every pass: a node the runtime could not settle last time stays transient.
        corrected = self.recover()
        for node in self.store.list_nodes(RECONCILABLE):
            try:
                row = self.reconcile_node(node)
            except AvlError as e:
                logger.warning(f"Reconcile of node {node.id} failed: {e.detail}")
                continue
            if row is not None:
                corrected.append(row)

        for node in self.store.list_nodes([NodeStatus.ERROR]):
            try:
                row = self.quiesce(node)
            except AvlError as e:
                logger.warning(f"Quiescing node {node.id} failed: {e.detail}")
                continue
            if row is not None:
                corrected.append(row)

        if self.fetch_identity:
            self._refresh_identities()
        return corrected

    run_once = _tick

    def _observe(self, node: NodeRow) -> tuple[str | None, ContainerStatus]:
        runtime = self.manager.runtime_for(node)
        ref = node.container_id
        observed = self.manager.call("inspect", runtime.inspect_status, ref) if ref else ContainerStatus.MISSING
        if observed == ContainerStatus.MISSING:
            found = self.manager.call("find container", runtime.find_by_label, node.id)
            if found is not None and found.id != ref:
                ref = found.id
                observed = self.manager.call("inspect", runtime.inspect_status, ref)
        return ref, ContainerStatus(observed)

    def reconcile_node(self, node: NodeRow) -> NodeRow | None:
        """Correct drift for one stable node. Returns the updated row, if any."""
        if self.manager.locks.locked(node.id):
            return None
        ref, observed = self._observe(node)
        if observed == ContainerStatus.UNKNOWN:
            return None

        drift = DRIFT.get((node.state, observed))
        if drift is None and ref == node.container_id:
            return None

        with self.manager.locks.hold(node.id, timeout=0) as acquired:
            if not acquired:
                logger.debug(f"Node {node.id} busy; skipping until next pass")
                return None
            current = self.store.get_node(node.id)
            if current is None or current.version != node.version:
                # A user operation moved it since we looked.
                return None

            if drift is None:
                # Cached reference was stale; the label found the real container.
                self.store.set_container_ref(node.id, node.state, ref)
                logger.info(f"Refreshed container reference for node {node.id} to {ref[:12]}")
                return None

            target, why = drift
            detail = f"{node.status} -> {target.value}: {why}"
            row = self.store.transition(
                node.id,
                node.state,
                target,
                container_id=ref if target in CONTAINER_STATES else None,
                event=(EventKind.DRIFT_CORRECTED, detail),
            )
            log_transition(EventKind.DRIFT_CORRECTED, detail, node.id)
            return row

    def quiesce(self, node: NodeRow) -> NodeRow | None:
        """Stop a container still running for a node in ``error``.

        A runtime call that outlived its deadline can finish after the node was marked
        failed, leaving a live container behind. The node stays in ``error``.
        """
        runtime = self.manager.runtime_for(node)
        found = self.manager.call("find container", runtime.find_by_label, node.id)
        if found is None:
            return None
        if self.manager.call("inspect", runtime.inspect_status, found.id) != ContainerStatus.RUNNING:
            return None

        with self.manager.locks.hold(node.id, timeout=0) as acquired:
            if not acquired:
                return None
            current = self.store.get_node(node.id)
            if current is None or current.version != node.version:
                return None
            cfg = self.manager.cfg
            self.manager.call(
                "stop",
                runtime.stop_container,
                found.id,
                cfg.stop_timeout_s,
                timeout=cfg.runtime_timeout_s + cfg.stop_timeout_s,
            )
            detail = f"error -> error: stopped container {found.name} left running by a failed operation"
            row = self.store.transition(
                node.id,
                NodeStatus.ERROR,
                NodeStatus.ERROR,
                container_id=None,
                event=(EventKind.DRIFT_CORRECTED, detail),
            )
            log_transition(EventKind.DRIFT_CORRECTED, detail, node.id)
            return row

    def recover(self) -> list[NodeRow]:
        """Settle nodes left mid-transition with no operation in flight.

        User operations hold the node lock for the whole transition, so an unlocked
        transient node was abandoned: by a manager that exited uncleanly or by a failure
        that could not be recorded. Nodes the runtime cannot settle yet are retried on the
        next pass.
        """
        settled: list[NodeRow] = []
        for node in self.store.list_nodes(TRANSIENT):
            with self.manager.locks.hold(node.id, timeout=0) as acquired:
                if not acquired:
                    continue
                try:
                    row = self._settle(node)
                except AvlError as e:
                    logger.warning(f"Recovery of node {node.id} failed: {e.detail}")
                    continue
                if row is not None:
                    settled.append(row)
        return settled

    def _settle(self, node: NodeRow) -> NodeRow | None:
        current = self.store.get_node(node.id)
        if current is None or current.version != node.version:
            return None
        runtime = self.manager.runtime_for(node)

        if node.state == NodeStatus.DELETING:
            ref = self.manager.locate_container(runtime, node)
            if ref is not None:
                try:
                    self.manager.call("remove", runtime.remove_container, ref, False)
                except NotFound:
                    pass
            detail = f"deletion of node {node.name} completed after restart"
            row = self.store.transition(
                node.id,
                NodeStatus.DELETING,
                NodeStatus.DELETED,
                container_id=None,
                event=(EventKind.DRIFT_CORRECTED, detail),
                drop_bindings=True,
            )
            log_transition(EventKind.DRIFT_CORRECTED, detail, node.id)
            return row

        ref, observed = self._observe(node)
        target = SETTLE.get(observed)
        if target is None:
            return None
        detail = f"interrupted {node.status} settled to {target.value} (container {observed.value})"
        row = self.store.transition(
            node.id,
            node.state,
            target,
            container_id=ref if target in CONTAINER_STATES else None,
            event=(EventKind.DRIFT_CORRECTED, detail),
        )
        log_transition(EventKind.DRIFT_CORRECTED, detail, node.id)
        return row

    def _refresh_identities(self) -> None:
        for node in self.store.list_nodes([NodeStatus.RUNNING]):
            if node.node_id or node.host_id is None:
                continue
            host = self.store.get_host(node.host_id)
            if host is None:
                continue
            base_url = f"http://{rpc_host(host.address)}:{node.http_port}"
            node_id, msg, latency = fetch_node_id(base_url, timeout_s=self.manager.cfg.identity_timeout_s)
            if node_id is None:
                logger.debug(f"NodeID lookup for node {node.id} at {base_url}: {msg}")
                continue
            with self.manager.locks.hold(node.id, timeout=0) as acquired:
                if not acquired:
                    continue
                self.store.set_node_identity(node.id, node_id)
            logger.info(f"Node {node.id} reports {node_id} ({latency} ms)")
