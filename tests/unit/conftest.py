"""
Shared fixtures for unit tests.

FakeContainerManager keeps containers, volumes and networks in memory so the
reconciler and the lifecycle controller can be exercised end to end without
a Docker daemon.
"""

import asyncio
import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

import pytest

from mcm_common.config import Settings
from mcm_common.errors import RuntimeOperationError
from mcm_controller.container_manager import ContainerSpec, ContainerState, ExecResult
from mcm_controller.services import build_services
from mcm_persistence.sqlite_repository import SQLiteFleetRepository


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    running: bool = False
    networks: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)


class FakeContainerManager:
    """In-memory stand-in for ContainerManager with the same async API."""

    def __init__(self):
        self.containers: dict[str, FakeContainer] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.networks: dict[str, dict[str, str]] = {}
        self.images: set[str] = set()
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.logs: dict[str, list[str]] = {}
        self.command_output = "Done\n"
        self.command_exit_code = 0
        self.config_write_exit_code = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def _find(self, ref: str) -> FakeContainer:
        for container in self.containers.values():
            if ref in (container.id, container.spec.name):
                return container
        raise RuntimeOperationError(f"No such container: {ref}")

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def container_by_name(self, name: str) -> FakeContainer:
        return self._find(name)

    async def ping(self) -> str:
        return "27.0.0"

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def pull_image(self, image: str) -> None:
        self._record("pull_image", image)
        self.images.add(image)

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> str:
        self._record("create_volume", name)
        self.volumes.setdefault(name, {})
        return name

    async def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    async def list_networks(self) -> list[str]:
        return ["bridge", "host", "none", *self.networks]

    async def create_network(
        self, name: str, driver: str = "bridge", labels: dict[str, str] | None = None
    ) -> None:
        self._record("create_network", name, driver)
        if name in self.networks:
            raise RuntimeOperationError(f"network with name {name} already exists")
        self.networks[name] = dict(labels or {})

    async def connect_network(
        self, network: str, container_id: str, aliases: list[str] | None = None
    ) -> None:
        self._record("connect_network", network, container_id, list(aliases or []))
        if network not in self.networks:
            raise RuntimeOperationError(f"network {network} not found")
        container = self._find(container_id)
        if network in container.networks:
            raise RuntimeOperationError("endpoint already exists in network")
        container.networks[network] = list(aliases or [])

    async def get_container_networks(self, container_id: str) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._find(container_id).networks.items()}

    async def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec.name)
        if any(c.spec.name == spec.name for c in self.containers.values()):
            raise RuntimeOperationError(f"Conflict. The container name {spec.name} is already in use")
        if spec.volume not in self.volumes:
            raise RuntimeOperationError(f"volume {spec.volume} not found")
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        container = FakeContainer(id=container_id, spec=spec)
        if spec.network:
            container.networks[spec.network] = list(spec.aliases)
        self.containers[container_id] = container
        return container_id

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        self._find(container_id).running = True

    async def stop_container(self, container_id: str, timeout: int = 30) -> None:
        self._record("stop_container", container_id, timeout)
        self._find(container_id).running = False

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        self._record("remove_container", container_id, force)
        for key, container in list(self.containers.items()):
            if container_id in (container.id, container.spec.name):
                del self.containers[key]

    async def get_container_state(self, container_id: str) -> ContainerState:
        self._record("get_container_state", container_id)
        try:
            container = self._find(container_id)
        except RuntimeOperationError:
            return ContainerState(exists=False)
        return ContainerState(
            exists=True,
            running=container.running,
            status="running" if container.running else "exited",
        )

    async def exec_in_container(
        self, container_id: str, command: list[str], stdin: bytes | None = None
    ) -> ExecResult:
        self._record("exec_in_container", container_id, list(command))
        container = self._find(container_id)
        if not container.running:
            return ExecResult(exit_code=1, output=f"container {container_id} is not running\n")

        if command[:2] == ["sh", "-c"] and "cat > " in command[2]:
            if self.config_write_exit_code != 0:
                return ExecResult(exit_code=self.config_write_exit_code, output="write failed\n")
            path = command[2].split("cat > ", 1)[1].strip()
            container.files[path] = (stdin or b"").decode()
            return ExecResult(exit_code=0, output="")

        return ExecResult(exit_code=self.command_exit_code, output=self.command_output)

    async def run_helper_container(
        self,
        image: str,
        volume: str,
        mount_path: str,
        command: list[str],
        stdin: bytes | None = None,
    ) -> None:
        self._record("run_helper_container", image, volume, list(command))
        if volume not in self.volumes:
            raise RuntimeOperationError(f"volume {volume} not found")
        path = command[-1].split("cat > ", 1)[1].strip()
        self.volumes[volume][path] = (stdin or b"").decode()

    async def stream_logs(
        self, container_id: str, follow: bool = True, tail: str = "100"
    ) -> AsyncGenerator[str, None]:
        self._record("stream_logs", container_id, follow, tail)
        for line in self.logs.get(container_id, []):
            yield line
        if follow:
            # Like `docker logs --follow`: wait for more output until cancelled
            await asyncio.Event().wait()

    def deployed_config(self, container_name: str = "mc-proxy-main") -> str | None:
        return self._find(container_name).files.get("/server/velocity.toml")


@pytest.fixture
def fake_cm():
    """Create an empty in-memory container runtime."""
    return FakeContainerManager()


@pytest.fixture
def db_path():
    """Path to a temporary database file, removed afterwards."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def settings(db_path):
    return Settings(db_path=db_path, stop_timeout=5)


@pytest.fixture
async def repo(db_path):
    """Create an initialized repository on a temporary database."""
    repository = SQLiteFleetRepository(db_path)
    await repository.initialize()
    yield repository
    await repository.close()


@pytest.fixture
def services(settings, repo, fake_cm):
    """Fully wired services over the temporary database and the fake runtime."""
    return build_services(settings, repo, fake_cm)
