from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Iterator

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound as DockerNotFound

from .errors import ContainerRuntimeError, NotFound, ValidationError
from .models import ContainerStatus
from .settings import settings

logger = logging.getLogger(__name__)

MANAGED_LABEL = "avalauncher.managed"

_TAIL_RE = re.compile(r"^[0-9]+$")

# Docker states that count as "running" for lifecycle purposes.
_RUNNING_STATES = {"running", "restarting"}
# "paused" is in neither set: it is not stopped, and start() cannot resume it.
_EXITED_STATES = {"created", "exited", "dead", "removing"}

_TRANSPORT_ERRORS = (DockerException, requests.exceptions.RequestException)


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ContainerSpec:
    image: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    ports: dict[str, int] = field(default_factory=dict)  # "9651/tcp" -> host port
    volumes: dict[str, str] = field(default_factory=dict)  # volume name -> container path
    env: dict[str, str] = field(default_factory=dict)
    command: list[str] | None = None


@dataclass(frozen=True)
class LogTail:
    """How much of a container's log to return.

    ``lines`` is either "all" or a count; ``follow`` keeps the stream open for new output.
    """

    lines: str | int = "all"
    follow: bool = False

    @classmethod
    def parse(cls, raw: str | None, follow: bool = False) -> "LogTail":
        raw = (raw or "").strip().lower()
        if raw in {"", "all"}:
            return cls("all", follow)
        if not _TAIL_RE.match(raw):
            raise ValidationError(f"Invalid tail value {raw!r}. Use 'all' or a line count.")
        return cls(int(raw), follow)


class LogStream:
    """Lazy byte stream over a container's logs.

    Iterating yields raw chunks. Closing releases the runtime-side HTTP response, which
    also ends a following stream. Safe to close more than once.
    """

    def __init__(self, source: Any):
        self._source = source
        self._closed = False
        self._lock = Lock()

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._source:
                if self._closed:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8", "replace")
                yield chunk
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self._source, "close", None)
        if close is not None:
            try:
                close()
            except (OSError, *_TRANSPORT_ERRORS) as e:
                logger.debug(f"Error closing log stream: {e}")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "LogStream":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def node_labels(node_key: str | int) -> dict[str, str]:
    """Labels that tie a container to its node; the durable source of truth for ownership."""
    return {settings.label_key: str(node_key), MANAGED_LABEL: "true"}


def label_filter(key: str, value: str) -> dict[str, list[str]]:
    return {"label": [f"{key}={value}"]}


class DockerRuntime:
    """Thin adapter over one Docker endpoint.

    Translates docker-py failures into NotFound / ContainerRuntimeError. Containers are
    addressed by id or name; :meth:`find_by_label` locates them without a cached id.
    """

    def __init__(self, base_url: str | None = None, client: Any = None, timeout: float | None = None):
        self.base_url = base_url
        self.timeout = int(timeout if timeout is not None else settings.runtime_timeout_s)
        self._docker = client
        self._client_lock = Lock()

    def _client(self) -> Any:
        with self._client_lock:
            if self._docker is None:
                try:
                    if self.base_url:
                        self._docker = docker.DockerClient(base_url=self.base_url, timeout=self.timeout)
                    else:
                        self._docker = docker.from_env(timeout=self.timeout)
                except _TRANSPORT_ERRORS as e:
                    raise ContainerRuntimeError(f"Docker is not available at {self.base_url or 'env'}: {e}") from e
            return self._docker

    def _get(self, ref: str) -> Any:
        try:
            return self._client().containers.get(ref)
        except DockerNotFound as e:
            raise NotFound(f"container {ref} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"inspect {ref} failed: {type(e).__name__}: {e}") from e

    def create_container(self, spec: ContainerSpec) -> ContainerRef:
        """Create and start a container (pulling the image if needed)."""
        c = self._client()
        try:
            container = c.containers.run(
                spec.image,
                command=spec.command,
                detach=True,
                name=spec.name,
                environment=spec.env,
                labels=spec.labels,
                ports=spec.ports,
                volumes={name: {"bind": path, "mode": "rw"} for name, path in spec.volumes.items()},
                # Drift is corrected by the reconciler; keep Docker restart policy off to make behavior explicit.
                restart_policy={"Name": "no"},
            )
        except ImageNotFound as e:
            raise ContainerRuntimeError(f"image {spec.image} could not be pulled: {e}") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"create {spec.name} failed: {type(e).__name__}: {e}") from e

        logger.info(f"Created container {spec.name} ({container.id[:12]}) from image {spec.image}")
        return ContainerRef(id=container.id, name=spec.name)

    def start_container(self, ref: str) -> None:
        cont = self._get(ref)
        try:
            cont.start()
        except DockerNotFound as e:
            raise NotFound(f"container {ref} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"start {ref} failed: {type(e).__name__}: {e}") from e

    def stop_container(self, ref: str, timeout: int) -> None:
        """Graceful stop; Docker kills the container once ``timeout`` seconds pass."""
        cont = self._get(ref)
        try:
            cont.reload()
            if cont.status not in _RUNNING_STATES:
                return
            cont.stop(timeout=timeout)
        except DockerNotFound as e:
            raise NotFound(f"container {ref} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"stop {ref} failed: {type(e).__name__}: {e}") from e

    def remove_container(self, ref: str, remove_volumes: bool = False) -> None:
        cont = self._get(ref)
        volume_names: list[str] = []
        if remove_volumes:
            for mount in cont.attrs.get("Mounts") or []:
                if mount.get("Type") == "volume" and mount.get("Name"):
                    volume_names.append(mount["Name"])
        try:
            cont.remove(v=remove_volumes, force=True)
        except DockerNotFound as e:
            raise NotFound(f"container {ref} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"remove {ref} failed: {type(e).__name__}: {e}") from e

        for name in volume_names:
            self.remove_volume(name)

    def inspect_status(self, ref: str) -> ContainerStatus:
        try:
            cont = self._client().containers.get(ref)
            cont.reload()
        except DockerNotFound:
            return ContainerStatus.MISSING
        except (ContainerRuntimeError, *_TRANSPORT_ERRORS) as e:
            logger.warning(f"Could not inspect container {ref}: {e}")
            return ContainerStatus.UNKNOWN
        if cont.status in _RUNNING_STATES:
            return ContainerStatus.RUNNING
        if cont.status in _EXITED_STATES:
            return ContainerStatus.EXITED
        return ContainerStatus.UNKNOWN

    def stream_logs(self, ref: str, tail: LogTail | None = None) -> LogStream:
        tail = tail or LogTail()
        cont = self._get(ref)
        try:
            source = cont.logs(stream=True, follow=tail.follow, tail=tail.lines, stdout=True, stderr=True)
        except DockerNotFound as e:
            raise NotFound(f"container {ref} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"logs {ref} failed: {type(e).__name__}: {e}") from e
        return LogStream(source)

    def find_by_label(self, node_key: str | int) -> ContainerRef | None:
        """Locate a node's container from its label alone.

        If more than one matches (a crash between create and bookkeeping), the newest wins.
        """
        try:
            containers = self._client().containers.list(
                all=True, filters=label_filter(settings.label_key, str(node_key))
            )
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"label lookup for node {node_key} failed: {type(e).__name__}: {e}") from e
        if not containers:
            return None
        newest = max(containers, key=lambda x: (x.attrs or {}).get("Created", ""))
        return ContainerRef(id=newest.id, name=newest.name)

    def remove_volume(self, name: str) -> bool:
        """Remove a named volume; returns False if it did not exist."""
        try:
            self._client().volumes.get(name).remove(force=True)
        except DockerNotFound:
            return False
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"remove volume {name} failed: {type(e).__name__}: {e}") from e
        return True
