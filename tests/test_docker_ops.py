import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound as DockerNotFound

from avl.docker_ops import ContainerSpec, DockerRuntime, LogStream, LogTail, node_labels
from avl.errors import ContainerRuntimeError, NotFound, ValidationError
from avl.models import ContainerStatus
from avl.settings import settings


class FakeContainer:
    def __init__(self, cid, name, status="running", labels=None, created="2026-01-01T00:00:00Z", mounts=None):
        self.id = cid
        self.name = name
        self.status = status
        self.labels = labels or {}
        self.attrs = {"Created": created, "Mounts": mounts or []}
        self.actions = []

    def reload(self):
        pass

    def start(self):
        self.actions.append("start")
        self.status = "running"

    def stop(self, timeout):
        self.actions.append(("stop", timeout))
        self.status = "exited"

    def remove(self, v=False, force=False):
        self.actions.append(("remove", v, force))

    def logs(self, **kwargs):
        self.actions.append(("logs", kwargs))
        return iter([b"a\n", "b\n"])


class FakeVolume:
    def __init__(self, volumes, name):
        self.volumes = volumes
        self.name = name

    def remove(self, force=False):
        self.volumes.removed.append(self.name)


class FakeVolumes:
    def __init__(self, names=()):
        self.names = set(names)
        self.removed = []

    def get(self, name):
        if name not in self.names:
            raise DockerNotFound(f"no such volume: {name}")
        return FakeVolume(self, name)


class FakeContainers:
    def __init__(self, items=()):
        self.items = {c.id: c for c in items}
        self.run_kwargs = None
        self.list_filters = None
        self.fail = None

    def get(self, ref):
        if self.fail is not None:
            raise self.fail
        for c in self.items.values():
            if ref in (c.id, c.name):
                return c
        raise DockerNotFound(f"No such container: {ref}")

    def run(self, image, **kwargs):
        if self.fail is not None:
            raise self.fail
        self.run_kwargs = {"image": image, **kwargs}
        c = FakeContainer("f" * 64, kwargs["name"], labels=kwargs.get("labels"))
        self.items[c.id] = c
        return c

    def list(self, all=False, filters=None):
        if self.fail is not None:
            raise self.fail
        self.list_filters = filters
        key, _, value = filters["label"][0].partition("=")
        return [c for c in self.items.values() if c.labels.get(key) == value]


class FakeClient:
    def __init__(self, containers=(), volumes=()):
        self.containers = FakeContainers(containers)
        self.volumes = FakeVolumes(volumes)


def _runtime(*containers, volumes=()):
    client = FakeClient(containers, volumes)
    return DockerRuntime(client=client), client


def test_create_container_passes_labels_ports_and_no_restart():
    rt, client = _runtime()
    spec = ContainerSpec(
        image="avax:latest",
        name="avl-val-1-1",
        labels=node_labels(1),
        ports={"9651/tcp": 9651, "9650/tcp": 9650},
        volumes={"avl-val-1-1-data": "/root/.avalanchego"},
        env={"AVAGO_HTTP_PORT": "9650"},
    )
    ref = rt.create_container(spec)
    assert ref.name == "avl-val-1-1"
    kw = client.containers.run_kwargs
    assert kw["detach"] is True
    assert kw["restart_policy"] == {"Name": "no"}
    assert kw["labels"] == {settings.label_key: "1", "avalauncher.managed": "true"}
    assert kw["volumes"] == {"avl-val-1-1-data": {"bind": "/root/.avalanchego", "mode": "rw"}}


@pytest.mark.parametrize(
    "err,match",
    [
        (ImageNotFound("pull access denied"), "could not be pulled"),
        (APIError("port is already allocated"), "create avl-x-1 failed"),
        (requests.exceptions.ConnectionError("refused"), "create avl-x-1 failed"),
    ],
)
def test_create_container_failures(err, match):
    rt, client = _runtime()
    client.containers.fail = err
    with pytest.raises(ContainerRuntimeError, match=match):
        rt.create_container(ContainerSpec(image="avax:latest", name="avl-x-1"))


def test_missing_container_is_not_found():
    rt, _ = _runtime()
    for op in (rt.start_container, lambda ref: rt.stop_container(ref, 5), rt.remove_container):
        with pytest.raises(NotFound):
            op("nope")


def test_stop_is_graceful_and_idempotent():
    c = FakeContainer("a" * 64, "n")
    rt, _ = _runtime(c)
    rt.stop_container(c.id, timeout=30)
    rt.stop_container(c.id, timeout=30)
    assert c.actions == [("stop", 30)]


def test_remove_container_removes_named_volumes():
    c = FakeContainer("a" * 64, "n", mounts=[{"Type": "volume", "Name": "avl-n-1-data"}, {"Type": "bind"}])
    rt, client = _runtime(c, volumes=["avl-n-1-data"])
    rt.remove_container(c.id, remove_volumes=True)
    assert c.actions == [("remove", True, True)]
    assert client.volumes.removed == ["avl-n-1-data"]


def test_remove_volume_missing_is_false():
    rt, _ = _runtime(volumes=["v1"])
    assert rt.remove_volume("v1") is True
    assert rt.remove_volume("v2") is False


@pytest.mark.parametrize(
    "docker_status,expected",
    [
        ("running", ContainerStatus.RUNNING),
        ("restarting", ContainerStatus.RUNNING),
        ("exited", ContainerStatus.EXITED),
        ("created", ContainerStatus.EXITED),
        ("dead", ContainerStatus.EXITED),
        ("paused", ContainerStatus.UNKNOWN),
        ("weird", ContainerStatus.UNKNOWN),
    ],
)
def test_inspect_status(docker_status, expected):
    c = FakeContainer("a" * 64, "n", status=docker_status)
    rt, _ = _runtime(c)
    assert rt.inspect_status(c.id) == expected


def test_inspect_status_missing_and_unreachable():
    rt, client = _runtime()
    assert rt.inspect_status("nope") == ContainerStatus.MISSING
    client.containers.fail = requests.exceptions.ConnectionError("daemon down")
    assert rt.inspect_status("nope") == ContainerStatus.UNKNOWN


def test_find_by_label_prefers_newest():
    old = FakeContainer("a" * 64, "old", labels=node_labels(3), created="2026-01-01T00:00:00Z")
    new = FakeContainer("b" * 64, "new", labels=node_labels(3), created="2026-02-01T00:00:00Z")
    other = FakeContainer("c" * 64, "other", labels=node_labels(4))
    rt, client = _runtime(old, new, other)
    assert rt.find_by_label(3).id == new.id
    assert client.containers.list_filters == {"label": [f"{settings.label_key}=3"]}
    assert rt.find_by_label(99) is None


def test_find_by_label_transport_failure():
    rt, client = _runtime()
    client.containers.fail = requests.exceptions.ConnectionError("refused")
    with pytest.raises(ContainerRuntimeError):
        rt.find_by_label(1)


def test_stream_logs_encodes_and_closes():
    c = FakeContainer("a" * 64, "n")
    rt, _ = _runtime(c)
    stream = rt.stream_logs(c.id, LogTail(10, follow=True))
    assert c.actions[-1] == ("logs", {"stream": True, "follow": True, "tail": 10, "stdout": True, "stderr": True})
    assert stream.read() == b"a\nb\n"
    assert stream.closed


def test_log_stream_close_is_idempotent():
    closed = []

    class Source:
        def __iter__(self):
            return iter([b"x"])

        def close(self):
            closed.append(True)

    stream = LogStream(Source())
    stream.close()
    stream.close()
    assert closed == [True]
    assert list(stream) == []


@pytest.mark.parametrize("raw,lines", [(None, "all"), ("", "all"), ("ALL", "all"), ("25", 25), ("0", 0)])
def test_log_tail_parse(raw, lines):
    assert LogTail.parse(raw).lines == lines


@pytest.mark.parametrize("raw", ["-1", "ten", "1.5"])
def test_log_tail_parse_rejects(raw):
    with pytest.raises(ValidationError):
        LogTail.parse(raw)

