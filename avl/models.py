from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class NodeStatus(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


# In-progress transitions; only the lock holder may move a node out of these.
TRANSIENT = frozenset({NodeStatus.STARTING, NodeStatus.STOPPING, NodeStatus.DELETING})

# Statuses in which a node may carry a container reference.
CONTAINER_STATES = frozenset({NodeStatus.STARTING, NodeStatus.RUNNING, NodeStatus.STOPPING, NodeStatus.STOPPED})

# Stable statuses the reconciler compares against the runtime.
RECONCILABLE = frozenset({NodeStatus.RUNNING, NodeStatus.STOPPED})


class EventKind(str, Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    DELETED = "deleted"
    ERROR = "error"
    DRIFT_CORRECTED = "drift-corrected"


class ContainerStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HostRow:
    id: int
    name: str
    address: str
    capacity: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NodeRow:
    id: int
    name: str
    image: str
    node_id: str | None
    staking_port: int
    http_port: int
    status: str
    host_id: int | None
    container_id: str | None
    version: int
    created_at: str
    updated_at: str

    @property
    def state(self) -> NodeStatus:
        return NodeStatus(self.status)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "node_id": self.node_id,
            "staking_port": self.staking_port,
            "status": self.status,
        }


@dataclass(frozen=True)
class L1Row:
    id: int
    node_ref: int
    subnet_id: str
    metadata: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["metadata"] = json.loads(self.metadata) if self.metadata else {}
        return d


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    node_ref: int | None
    kind: str
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
