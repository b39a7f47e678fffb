"""
Shared test fixtures.

FakeDockerClient mimics the small part of the docker SDK the engine uses
(containers.run / get / list, container.exec_run / stop / remove / reload),
so the real ContainerManager code runs without a Docker daemon.

Command behaviour is scripted per command string:

    fake_docker.script("cargo build", exit_code=1, stderr="boom", delay=0.2)
"""
import threading
import time
from dataclasses import dataclass

import pytest
from docker.errors import ImageNotFound, NotFound

from isobuild.executor.container_manager import ContainerManager, ContainerRegistry
from isobuild.models.build_step import BuildStep


@dataclass
class CommandScript:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    delay: float = 0.0


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", cid: str, run_kwargs: dict) -> None:
        self.client = client
        self.id = cid
        self.name = run_kwargs.get("name", "")
        self.labels = run_kwargs.get("labels", {})
        self.run_kwargs = run_kwargs
        self.status = "running"
        self._stopped = threading.Event()

    def reload(self):
        pass

    def exec_run(self, cmd, demux=False, workdir=None):
        command = cmd[-1].split(" && ", 1)[1]
        script = self.client.scripts.get(command, CommandScript())
        start = time.monotonic()
        self.client.record("start", self.id, command)
        try:
            if script.delay and self._stopped.wait(script.delay):
                return 137, (b"", b"terminated")
            return script.exit_code, (script.stdout.encode(), script.stderr.encode())
        finally:
            self.client.durations[command] = time.monotonic() - start
            self.client.record("end", self.id, command)

    def stop(self, timeout=None):
        self.status = "exited"
        self._stopped.set()
        self.client.stopped.append(self.id)

    def remove(self, force=False):
        with self.client.lock:
            if self.id not in self.client.containers_by_id:
                raise NotFound(f"No such container: {self.id}")
            del self.client.containers_by_id[self.id]
        self.status = "removed"
        self._stopped.set()
        self.client.removed.append((self.id, force))


class FakeContainers:
    def __init__(self, client: "FakeDockerClient") -> None:
        self.client = client

    def run(self, **kwargs):
        image = kwargs["image"]
        if image in self.client.missing_images:
            raise ImageNotFound(f"pull access denied for {image}")
        with self.client.lock:
            self.client.counter += 1
            cid = f"{self.client.counter:04d}" + "f" * 60
            container = FakeContainer(self.client, cid, kwargs)
            self.client.containers_by_id[cid] = container
            self.client.launched.append(container)
        return container

    def get(self, container_id):
        with self.client.lock:
            container = self.client.containers_by_id.get(container_id)
        if container is None:
            raise NotFound(f"No such container: {container_id}")
        return container

    def list(self, all=False, filters=None):
        with self.client.lock:
            containers = list(self.client.containers_by_id.values())
        label = (filters or {}).get("label")
        if label:
            key, _, value = label.partition("=")
            containers = [c for c in containers if c.labels.get(key) == value]
        return containers


class FakeDockerClient:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counter = 0
        self.containers_by_id: dict[str, FakeContainer] = {}
        self.launched: list[FakeContainer] = []
        self.stopped: list[str] = []
        self.removed: list[tuple[str, bool]] = []
        self.missing_images: set[str] = set()
        self.scripts: dict[str, CommandScript] = {}
        self.events: list[tuple[float, str, str, str]] = []
        self.durations: dict[str, float] = {}
        self.containers = FakeContainers(self)

    def script(self, command: str, **kwargs) -> None:
        self.scripts[command] = CommandScript(**kwargs)

    def record(self, kind: str, cid: str, command: str) -> None:
        with self.lock:
            self.events.append((time.monotonic(), kind, cid, command))

    def first(self, kind: str, command: str) -> float:
        return next(t for t, k, _, c in self.events if k == kind and c == command)

    def commands_run(self) -> list[str]:
        return [c for _, k, _, c in self.events if k == "start"]


@pytest.fixture
def fake_docker():
    return FakeDockerClient()


@pytest.fixture
def manager(fake_docker, tmp_path):
    return ContainerManager(
        registry=ContainerRegistry(),
        client=fake_docker,
        artifact_root=str(tmp_path / "artifacts"),
        stop_timeout=1,
    )


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return str(root)


@pytest.fixture
def make_step(project_root):
    def _make(index, name=None, command=None, dependencies=(), image="rust:1.77-slim", **kwargs):
        return BuildStep(
            index=index,
            name=name or f"step{index}",
            image=image,
            command=command or f"build-{index}",
            project_root=project_root,
            dependencies=frozenset(dependencies),
            **kwargs,
        )
    return _make
