from __future__ import annotations

import itertools
import threading
from dataclasses import replace

import pytest

from avl.db import Store
from avl.docker_ops import ContainerRef, LogStream
from avl.errors import NotFound
from avl.manager import LifecycleManager
from avl.models import ContainerStatus
from avl.settings import settings


class FakeRuntime:
    """Thread-safe in-memory stand-in for DockerRuntime.

    ``fail[op]`` makes an operation raise; ``gate[op]`` makes it block until the event is set.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.containers: dict[str, dict] = {}
        self.volumes: set[str] = set()
        self.logs: dict[str, list[bytes]] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.gate: dict[str, threading.Event] = {}
        self._seq = itertools.count(1)

    def _enter(self, op: str, *args) -> None:
        with self.lock:
            self.calls.append((op, *args))
        gate = self.gate.get(op)
        if gate is not None:
            gate.wait(10)
        err = self.fail.get(op)
        if err is not None:
            raise err

    def ops(self, op: str) -> list[tuple]:
        with self.lock:
            return [c for c in self.calls if c[0] == op]

    def release_all(self) -> None:
        for gate in self.gate.values():
            gate.set()

    # -- runtime surface -----------------------------------------------------

    def create_container(self, spec):
        self._enter("create", spec)
        with self.lock:
            cid = f"{next(self._seq):064x}"
            self.containers[cid] = {
                "name": spec.name,
                "labels": dict(spec.labels),
                "status": "running",
                "volumes": set(spec.volumes),
                "env": dict(spec.env),
            }
            self.volumes.update(spec.volumes)
        return ContainerRef(id=cid, name=spec.name)

    def start_container(self, ref):
        self._enter("start", ref)
        with self.lock:
            if ref not in self.containers:
                raise NotFound(f"container {ref} not found")
            self.containers[ref]["status"] = "running"

    def stop_container(self, ref, timeout):
        self._enter("stop", ref, timeout)
        with self.lock:
            if ref not in self.containers:
                raise NotFound(f"container {ref} not found")
            self.containers[ref]["status"] = "exited"

    def remove_container(self, ref, remove_volumes=False):
        self._enter("remove", ref, remove_volumes)
        with self.lock:
            c = self.containers.pop(ref, None)
            if c is None:
                raise NotFound(f"container {ref} not found")
            if remove_volumes:
                self.volumes -= c["volumes"]

    def remove_volume(self, name):
        self._enter("remove_volume", name)
        with self.lock:
            existed = name in self.volumes
            self.volumes.discard(name)
            return existed

    def inspect_status(self, ref):
        self._enter("inspect", ref)
        with self.lock:
            c = self.containers.get(ref)
            if c is None:
                return ContainerStatus.MISSING
            return ContainerStatus.RUNNING if c["status"] == "running" else ContainerStatus.EXITED

    def stream_logs(self, ref, tail):
        self._enter("logs", ref, tail)
        with self.lock:
            if ref not in self.containers:
                raise NotFound(f"container {ref} not found")
            lines = list(self.logs.get(ref, []))
        if tail.lines != "all":
            lines = lines[-tail.lines:] if tail.lines else []
        return LogStream(iter(lines))

    def find_by_label(self, node_key):
        self._enter("find", node_key)
        with self.lock:
            for cid, c in self.containers.items():
                if c["labels"].get(settings.label_key) == str(node_key):
                    return ContainerRef(id=cid, name=c["name"])
        return None

    # -- test helpers --------------------------------------------------------

    def set_status(self, ref, status: str) -> None:
        with self.lock:
            self.containers[ref]["status"] = status

    def vanish(self, ref) -> None:
        with self.lock:
            self.containers.pop(ref, None)


@pytest.fixture
def cfg(tmp_path):
    return replace(
        settings,
        db_path=str(tmp_path / "avl.db"),
        runtime_timeout_s=2.0,
        stop_timeout_s=1,
        lock_wait_s=0.05,
        fetch_node_identity=False,
        reconcile_interval_s=1,
    )


@pytest.fixture
def store(cfg):
    s = Store(cfg.db_path)
    s.init_db()
    return s


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def manager(store, runtime, cfg):
    m = LifecycleManager(store, runtime_factory=lambda host: runtime, cfg=cfg)
    m.ensure_local_host()
    yield m
    runtime.release_all()
    m.close()


@pytest.fixture
def node(manager):
    return manager.create_node({"name": "val-1", "image": "avax:latest", "staking_port": 9651})
