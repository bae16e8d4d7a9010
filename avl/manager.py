from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Iterator

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .api_models import BindL1Request, CreateHostRequest, CreateNodeRequest, NodeIdentityRequest
from .db import Store
from .docker_ops import ContainerRef, ContainerSpec, DockerRuntime, LogStream, LogTail, node_labels
from .errors import AvlError, ContainerRuntimeError, InvalidTransition, NotFound, ValidationError
from .events import EventRecorder, log_transition
from .locks import NodeLocks
from .models import ContainerStatus, EventKind, EventRow, HostRow, L1Row, NodeRow, NodeStatus
from .settings import Settings, settings

logger = logging.getLogger(__name__)

START_FROM = frozenset({NodeStatus.CREATED, NodeStatus.STOPPED, NodeStatus.ERROR})
STOP_FROM = frozenset({NodeStatus.RUNNING, NodeStatus.ERROR})
DELETE_FROM = frozenset({NodeStatus.CREATED, NodeStatus.RUNNING, NodeStatus.STOPPED, NodeStatus.ERROR})

LOCAL_HOST_NAME = "local"


def _parse(model: type[BaseModel], req: Any) -> Any:
    if isinstance(req, model):
        return req
    try:
        return model.model_validate(req)
    except PydanticValidationError as e:
        msgs = [f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()]
        raise ValidationError("; ".join(msgs)) from e


def container_name(node: NodeRow) -> str:
    return f"avl-{node.name}-{node.id}"


def volume_name(node: NodeRow) -> str:
    return f"avl-{node.name}-{node.id}-data"


class LifecycleManager:
    """Owns the node <-> container mapping and every node state transition.

    All mutations of a node happen while holding that node's lock. Runtime calls run
    under a deadline so a hung Docker endpoint cannot pin a lock forever.
    """

    def __init__(
        self,
        store: Store,
        runtime_factory: Callable[[HostRow], Any] | None = None,
        cfg: Settings = settings,
    ):
        self.store = store
        self.cfg = cfg
        self.events = EventRecorder(store)
        self.locks = NodeLocks()
        self._runtime_factory = runtime_factory or (
            lambda host: DockerRuntime(base_url=host.address, timeout=cfg.runtime_timeout_s)
        )
        self._runtimes: dict[int, Any] = {}
        self._runtimes_lock = Lock()
        # Port and capacity checks and the insert must not interleave between creates.
        self._create_lock = Lock()
        self._pool = ThreadPoolExecutor(max_workers=max(1, cfg.runtime_workers), thread_name_prefix="avl-runtime")

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # -- plumbing ------------------------------------------------------------

    def runtime_for(self, node: NodeRow) -> Any:
        if node.host_id is None:
            raise NotFound(f"node {node.id} has no host")
        with self._runtimes_lock:
            runtime = self._runtimes.get(node.host_id)
            if runtime is not None:
                return runtime
        host = self.store.get_host(node.host_id)
        if host is None:
            raise NotFound(f"host {node.host_id} not found")
        with self._runtimes_lock:
            return self._runtimes.setdefault(host.id, self._runtime_factory(host))

    def call(self, what: str, fn: Callable[..., Any], *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
        """Run one runtime call under a deadline.

        Failures that are not already typed become ContainerRuntimeError.
        """
        deadline = self.cfg.runtime_timeout_s if timeout is None else timeout
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=deadline)
        except FutureTimeout as e:
            future.cancel()
            raise ContainerRuntimeError(f"{what} timed out after {deadline:g}s") from e
        except AvlError:
            raise
        except Exception as e:
            raise ContainerRuntimeError(f"{what} failed: {type(e).__name__}: {e}") from e

    def _require_node(self, node_id: Any) -> NodeRow:
        try:
            node_ref = int(node_id)
        except (TypeError, ValueError):
            raise NotFound(f"node {node_id!r} not found") from None
        node = self.store.get_node(node_ref)
        if node is None:
            raise NotFound(f"node {node_ref} not found")
        return node

    @contextmanager
    def _exclusive(self, node_id: Any) -> Iterator[NodeRow]:
        """Hold a node's lock for a user operation, yielding a fresh read of the node.

        Waits at most ``lock_wait_s``; a node that stays busy is reported as an invalid
        transition naming its current status.
        """
        node = self._require_node(node_id)
        with self.locks.hold(node.id, timeout=self.cfg.lock_wait_s) as acquired:
            if not acquired:
                current = self.store.get_node(node.id)
                raise InvalidTransition(
                    f"node {node.id} has another operation in progress",
                    status=current.status if current else None,
                )
            yield self._require_node(node.id)

    def _fail(self, node: NodeRow, expected: NodeStatus, err: AvlError) -> None:
        """Move a node stuck in a transient status to ``error`` and record why."""
        detail = f"{expected.value} failed: {err.detail}"
        try:
            self.store.transition(node.id, expected, NodeStatus.ERROR, container_id=None, event=(EventKind.ERROR, detail))
        except AvlError:
            logger.exception(f"Could not record failure for node {node.id}")
            return
        log_transition(EventKind.ERROR, detail, node.id)

    def _container_spec(self, node: NodeRow) -> ContainerSpec:
        env = {
            "AVAGO_HTTP_HOST": "0.0.0.0",
            "AVAGO_HTTP_PORT": str(node.http_port),
            "AVAGO_STAKING_PORT": str(node.staking_port),
            "AVAGO_DATA_DIR": self.cfg.node_data_dir,
        }
        subnets = sorted(b.subnet_id for b in self.store.list_l1s(node.id))
        if subnets:
            env["AVAGO_TRACK_SUBNETS"] = ",".join(subnets)
        return ContainerSpec(
            image=node.image,
            name=container_name(node),
            labels=node_labels(node.id),
            ports={f"{node.staking_port}/tcp": node.staking_port, f"{node.http_port}/tcp": node.http_port},
            volumes={volume_name(node): self.cfg.node_data_dir},
            env=env,
        )

    def locate_container(self, runtime: Any, node: NodeRow) -> str | None:
        """Container id for a node: the cached reference, else the label lookup."""
        if node.container_id:
            return node.container_id
        found = self.call("find container", runtime.find_by_label, node.id)
        return found.id if found else None

    # -- hosts ---------------------------------------------------------------

    def create_host(self, req: CreateHostRequest | dict[str, Any]) -> HostRow:
        req = _parse(CreateHostRequest, req)
        if self.store.get_host_by_name(req.name):
            raise ValidationError(f"host {req.name} already exists")
        host = self.store.insert_host(req.name, req.address, req.capacity)
        self.events.record(EventKind.CREATED, f"host {host.name} registered at {host.address}")
        return host

    def list_hosts(self) -> list[HostRow]:
        return self.store.list_hosts()

    def get_host(self, host_id: int) -> HostRow:
        host = self.store.get_host(int(host_id))
        if host is None:
            raise NotFound(f"host {host_id} not found")
        return host

    def delete_host(self, host_id: int) -> None:
        host = self.get_host(host_id)
        self.store.delete_host(host.id)
        with self._runtimes_lock:
            self._runtimes.pop(host.id, None)
        self.events.record(EventKind.DELETED, f"host {host.name} removed")

    def ensure_local_host(self) -> HostRow:
        hosts = self.store.list_hosts()
        if hosts:
            return hosts[0]
        return self.create_host({"name": LOCAL_HOST_NAME, "address": self.cfg.docker_host})

    # -- nodes ---------------------------------------------------------------

    def create_node(self, req: CreateNodeRequest | dict[str, Any]) -> NodeRow:
        """Persist a new node in ``created`` status. No container is created yet."""
        req = _parse(CreateNodeRequest, req)

        if req.host_id is not None:
            host = self.store.get_host(req.host_id)
            if host is None:
                raise ValidationError(f"host {req.host_id} not found")
        else:
            hosts = self.store.list_hosts()
            if not hosts:
                raise ValidationError("no host available; register a host first")
            host = hosts[0]

        if req.staking_port == req.http_port:
            raise ValidationError("staking_port and http_port must differ")
        if self.store.get_node_by_name(req.name):
            raise ValidationError(f"node name {req.name} already in use")

        with self._create_lock:
            live = [n for n in self.store.list_nodes() if n.host_id == host.id and n.state != NodeStatus.DELETED]
            if host.capacity and len(live) >= host.capacity:
                raise ValidationError(f"host {host.name} is at capacity ({host.capacity} nodes)")
            wanted = {req.staking_port, req.http_port}
            for other in live:
                clash = wanted & {other.staking_port, other.http_port}
                if clash:
                    raise ValidationError(f"port {min(clash)} already used by node {other.name} on host {host.name}")

            node = self.store.insert_node(
                name=req.name,
                image=req.image,
                staking_port=req.staking_port,
                http_port=req.http_port,
                host_id=host.id,
                node_id=req.node_id,
            )
        log_transition(EventKind.CREATED, f"node {node.name} created from {node.image}", node.id)
        return node

    def list_nodes(self) -> list[NodeRow]:
        return self.store.list_nodes()

    def get_node(self, node_id: Any) -> NodeRow:
        return self._require_node(node_id)

    def start_node(self, node_id: Any) -> NodeRow:
        with self._exclusive(node_id) as node:
            if node.state not in START_FROM:
                raise InvalidTransition(f"cannot start node {node.id}", status=node.status)

            node = self.store.transition(node.id, node.state, NodeStatus.STARTING)
            try:
                runtime = self.runtime_for(node)
                ref = self._start_container(runtime, node)
                observed = self.call("inspect", runtime.inspect_status, ref.id)
                if observed != ContainerStatus.RUNNING:
                    raise ContainerRuntimeError(f"container {ref.name} is {ContainerStatus(observed).value} after start")
            except AvlError as e:
                self._fail(node, NodeStatus.STARTING, e)
                raise

            detail = f"container {ref.name} running"
            node = self.store.transition(
                node.id, NodeStatus.STARTING, NodeStatus.RUNNING, container_id=ref.id, event=(EventKind.STARTED, detail)
            )
            log_transition(EventKind.STARTED, detail, node.id)
            return node

    def _start_container(self, runtime: Any, node: NodeRow) -> ContainerRef:
        ref_id = node.container_id
        if ref_id:
            try:
                self.call("start", runtime.start_container, ref_id)
                return ContainerRef(id=ref_id, name=container_name(node))
            except NotFound:
                logger.warning(f"Cached container {ref_id[:12]} for node {node.id} is gone; looking up by label")

        found = self.call("find container", runtime.find_by_label, node.id)
        if found is not None:
            self.call("start", runtime.start_container, found.id)
            return found
        return self.call("create", runtime.create_container, self._container_spec(node))

    def stop_node(self, node_id: Any) -> NodeRow:
        with self._exclusive(node_id) as node:
            if node.state not in STOP_FROM:
                raise InvalidTransition(f"cannot stop node {node.id}", status=node.status)

            runtime = self.runtime_for(node)
            ref = self.locate_container(runtime, node)
            if ref is None:
                # Only reachable from error: nothing left to stop.
                raise InvalidTransition(f"node {node.id} has no container to stop", status=node.status)

            node = self.store.transition(node.id, node.state, NodeStatus.STOPPING)
            try:
                ref = self._stop_container(runtime, node, ref)
                observed = self.call("inspect", runtime.inspect_status, ref)
                if observed != ContainerStatus.EXITED:
                    raise ContainerRuntimeError(f"container {ref[:12]} is {ContainerStatus(observed).value} after stop")
            except AvlError as e:
                self._fail(node, NodeStatus.STOPPING, e)
                raise

            detail = f"container {ref[:12]} stopped"
            node = self.store.transition(
                node.id, NodeStatus.STOPPING, NodeStatus.STOPPED, container_id=ref, event=(EventKind.STOPPED, detail)
            )
            log_transition(EventKind.STOPPED, detail, node.id)
            return node

    def _stop_container(self, runtime: Any, node: NodeRow, ref: str) -> str:
        deadline = self.cfg.runtime_timeout_s + self.cfg.stop_timeout_s
        try:
            self.call("stop", runtime.stop_container, ref, self.cfg.stop_timeout_s, timeout=deadline)
            return ref
        except NotFound:
            logger.warning(f"Cached container {ref[:12]} for node {node.id} is gone; looking up by label")

        found = self.call("find container", runtime.find_by_label, node.id)
        if found is None or found.id == ref:
            raise ContainerRuntimeError(f"container for node {node.id} disappeared before stop")
        try:
            self.call("stop", runtime.stop_container, found.id, self.cfg.stop_timeout_s, timeout=deadline)
        except NotFound as e:
            raise ContainerRuntimeError(f"container {found.name} disappeared during stop") from e
        return found.id

    def delete_node(self, node_id: Any, remove_volumes: bool = False) -> NodeRow:
        """Force-stop and remove a node's container, then mark the node ``deleted``.

        The row is retained for audit (soft delete); its L1 bindings are removed.
        """
        with self._exclusive(node_id) as node:
            if node.state not in DELETE_FROM:
                raise InvalidTransition(f"cannot delete node {node.id}", status=node.status)

            cached_ref = node.container_id
            node = self.store.transition(node.id, node.state, NodeStatus.DELETING)
            try:
                runtime = self.runtime_for(node)
                removed = self._remove_containers(runtime, node, cached_ref, remove_volumes)
                if remove_volumes:
                    self.call("remove volume", runtime.remove_volume, volume_name(node))
            except AvlError as e:
                self._fail(node, NodeStatus.DELETING, e)
                raise

            detail = f"removed {removed} container(s)" + (" and volumes" if remove_volumes else "")
            node = self.store.transition(
                node.id,
                NodeStatus.DELETING,
                NodeStatus.DELETED,
                container_id=None,
                event=(EventKind.DELETED, detail),
                drop_bindings=True,
            )
            log_transition(EventKind.DELETED, detail, node.id)
            return node

    def _remove_containers(self, runtime: Any, node: NodeRow, ref: str | None, remove_volumes: bool) -> int:
        removed = 0
        seen: set[str] = set()
        while True:
            if ref is None:
                found = self.call("find container", runtime.find_by_label, node.id)
                ref = found.id if found else None
            if ref is None or ref in seen:
                return removed
            seen.add(ref)
            if self.call("inspect", runtime.inspect_status, ref) == ContainerStatus.RUNNING:
                try:
                    self.call(
                        "stop",
                        runtime.stop_container,
                        ref,
                        self.cfg.stop_timeout_s,
                        timeout=self.cfg.runtime_timeout_s + self.cfg.stop_timeout_s,
                    )
                except ContainerRuntimeError as e:
                    # The forced remove below kills it anyway.
                    logger.warning(f"Graceful stop of {ref[:12]} failed, forcing removal: {e.detail}")
            try:
                self.call("remove", runtime.remove_container, ref, remove_volumes)
                removed += 1
            except NotFound:
                logger.info(f"Container {ref[:12]} for node {node.id} already gone")
            ref = None

    def node_logs(self, node_id: Any, tail: LogTail | str | None = None, follow: bool = False) -> LogStream:
        """Open the node's container log stream. The caller must close it."""
        node = self._require_node(node_id)
        if node.state == NodeStatus.DELETED or not node.container_id:
            raise NotFound(f"node {node.id} has no container")
        if not isinstance(tail, LogTail):
            tail = LogTail.parse(tail, follow=follow)
        runtime = self.runtime_for(node)
        return self.call("logs", runtime.stream_logs, node.container_id, tail)

    def set_node_identity(self, node_id: Any, req: NodeIdentityRequest | dict[str, Any] | str) -> NodeRow:
        if isinstance(req, str):
            req = {"node_id": req}
        req = _parse(NodeIdentityRequest, req)
        with self._exclusive(node_id) as node:
            if node.state == NodeStatus.DELETED:
                raise InvalidTransition(f"cannot change identity of node {node.id}", status=node.status)
            return self.store.set_node_identity(node.id, req.node_id)

    # -- L1 bindings ---------------------------------------------------------

    def bind_l1(self, node_id: Any, req: BindL1Request | dict[str, Any]) -> L1Row:
        req = _parse(BindL1Request, req)
        with self._exclusive(node_id) as node:
            if node.state == NodeStatus.DELETED:
                raise InvalidTransition(f"cannot bind node {node.id}", status=node.status)
            if any(b.subnet_id == req.subnet_id for b in self.store.list_l1s(node.id)):
                raise ValidationError(f"node {node.id} is already bound to {req.subnet_id}")
            binding = self.store.insert_l1(node.id, req.subnet_id, req.metadata)
        logger.info(f"Bound node {node.id} to L1 {req.subnet_id}")
        return binding

    def list_l1s(self, node_id: Any = None) -> list[L1Row]:
        if node_id is None:
            return self.store.list_l1s()
        return self.store.list_l1s(self._require_node(node_id).id)

    def unbind_l1(self, binding_id: int) -> None:
        self.store.delete_l1(int(binding_id))

    # -- reads ---------------------------------------------------------------

    def list_events(self, limit: Any = None) -> list[EventRow]:
        return self.events.list(limit)

    def status(self, include_nodes: bool = True) -> dict[str, Any]:
        resp: dict[str, Any] = {"counts": self.store.counts()}
        if include_nodes:
            resp["nodes"] = [n.summary() for n in self.store.list_nodes()]
        return resp
