"""
Container manager for the Docker runtime.

This module provides an abstraction over the Docker CLI for the container,
volume, network, image and exec primitives the reconciler and the lifecycle
controller need. Every call shells out to `docker` asynchronously and must be
awaited; nothing here keeps state between calls.
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

from mcm_common.errors import RuntimeOperationError, RuntimeUnavailableError

logger = logging.getLogger(__name__)

DAEMON_UNREACHABLE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "error during connect",
)


@dataclass
class ContainerSpec:
    """
    Everything needed to create one long-running container.

    ports maps "<container-port>/<proto>" to the host port to publish.
    """

    name: str
    image: str
    volume: str
    mount_path: str
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    ports: dict[str, int] = field(default_factory=dict)
    network: str | None = None
    aliases: list[str] = field(default_factory=list)
    restart_policy: str = "unless-stopped"


@dataclass
class ContainerState:
    """Live runtime state of a container as reported by `docker inspect`."""

    exists: bool
    running: bool = False
    restarting: bool = False
    dead: bool = False
    oom_killed: bool = False
    status: str = ""


@dataclass
class ExecResult:
    """Exit code and combined stdout/stderr of a command run in a container."""

    exit_code: int
    output: str


class ContainerManager:
    """
    Manages Docker containers, volumes and networks for the fleet.

    Errors are raised as RuntimeUnavailableError when the daemon (or the
    docker binary) cannot be reached, and RuntimeOperationError when a
    specific operation is rejected.
    """

    def __init__(self, docker_binary: str = "docker"):
        """
        Initialize the container manager.

        Args:
            docker_binary: Name or path of the Docker CLI executable
        """
        self.docker_binary = docker_binary

    async def _run(
        self, *args: str, stdin: bytes | None = None
    ) -> tuple[int, bytes, bytes]:
        """Run one docker CLI command and return (returncode, stdout, stderr)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"Docker CLI '{self.docker_binary}' not found"
            ) from e

        stdout, stderr = await process.communicate(input=stdin)

        if process.returncode != 0:
            error = stderr.decode()
            if any(marker in error for marker in DAEMON_UNREACHABLE_MARKERS):
                raise RuntimeUnavailableError(
                    f"Docker daemon unavailable: {error.strip()}"
                )

        return process.returncode, stdout, stderr

    async def _check(self, action: str, *args: str, stdin: bytes | None = None) -> str:
        """Run a command that must succeed and return its stripped stdout."""
        returncode, stdout, stderr = await self._run(*args, stdin=stdin)
        if returncode != 0:
            raise RuntimeOperationError(f"Failed to {action}: {stderr.decode().strip()}")
        return stdout.decode().strip()

    async def ping(self) -> str:
        """
        Check that the Docker daemon is reachable.

        Returns:
            The daemon's server version
        """
        return await self._check("query Docker version", "version", "--format", "{{.Server.Version}}")

    # Images

    async def image_exists(self, image: str) -> bool:
        returncode, _, _ = await self._run("image", "inspect", image)
        return returncode == 0

    async def pull_image(self, image: str) -> None:
        """
        Make sure an image is present locally, pulling it if needed.

        Raises:
            RuntimeOperationError: If the pull fails
        """
        if await self.image_exists(image):
            logger.debug(f"Image {image} already present")
            return

        logger.info(f"Pulling image {image}")
        await self._check(f"pull image {image}", "pull", "--quiet", image)

    # Volumes

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> str:
        """
        Create a named volume. Creating an existing volume is a no-op.

        Returns:
            The volume name
        """
        args = ["volume", "create"]
        for key, value in (labels or {}).items():
            args.extend(["--label", f"{key}={value}"])
        args.append(name)
        return await self._check(f"create volume {name}", *args)

    async def remove_volume(self, name: str) -> None:
        """
        Remove a volume.

        Raises:
            RuntimeOperationError: If removal fails for any reason other
                                   than the volume already being gone
        """
        returncode, _, stderr = await self._run("volume", "rm", name)
        if returncode != 0:
            error = stderr.decode()
            if "no such volume" not in error.lower():
                raise RuntimeOperationError(f"Failed to remove volume {name}: {error.strip()}")

    # Networks

    async def list_networks(self) -> list[str]:
        """List the names of all networks known to the daemon."""
        output = await self._check("list networks", "network", "ls", "--format", "{{.Name}}")
        return [line for line in output.split("\n") if line]

    async def create_network(
        self,
        name: str,
        driver: str = "bridge",
        labels: dict[str, str] | None = None,
    ) -> None:
        args = ["network", "create", "--driver", driver]
        for key, value in (labels or {}).items():
            args.extend(["--label", f"{key}={value}"])
        args.append(name)
        await self._check(f"create network {name}", *args)

    async def connect_network(
        self, network: str, container_id: str, aliases: list[str] | None = None
    ) -> None:
        """
        Attach a container to a network.

        Args:
            network: Network name
            container_id: Docker container ID or name
            aliases: DNS aliases the container answers to on this network
        """
        args = ["network", "connect"]
        for alias in aliases or []:
            args.extend(["--alias", alias])
        args.extend([network, container_id])
        await self._check(f"connect {container_id} to network {network}", *args)

    async def get_container_networks(self, container_id: str) -> dict[str, list[str]]:
        """
        Get a container's network attachments.

        Returns:
            Mapping of network name to the aliases set on that attachment
        """
        output = await self._check(
            f"inspect networks of {container_id}",
            "container",
            "inspect",
            "--format",
            "{{json .NetworkSettings.Networks}}",
            container_id,
        )
        try:
            networks = json.loads(output) or {}
        except json.JSONDecodeError as e:
            raise RuntimeOperationError(f"Failed to parse network info: {e}") from e

        return {name: list(endpoint.get("Aliases") or []) for name, endpoint in networks.items()}

    # Containers

    async def create_container(self, spec: ContainerSpec) -> str:
        """
        Create (but don't start) a container.

        Args:
            spec: Image, mounts, environment and network settings

        Returns:
            The new container's ID

        Raises:
            RuntimeOperationError: If container creation fails
        """
        args = [
            "create",
            "--name",
            spec.name,
            "--restart",
            spec.restart_policy,
            "-v",
            f"{spec.volume}:{spec.mount_path}",
        ]
        for key, value in spec.env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for container_port, host_port in spec.ports.items():
            args.extend(["-p", f"{host_port}:{container_port}"])
        if spec.network:
            args.extend(["--network", spec.network])
            for alias in spec.aliases:
                args.extend(["--network-alias", alias])
        args.append(spec.image)

        container_id = await self._check(f"create container {spec.name}", *args)
        logger.info(f"Created container {spec.name} ({container_id[:12]})")
        return container_id

    async def start_container(self, container_id: str) -> None:
        """
        Start a created or stopped container.

        Raises:
            RuntimeOperationError: If container start fails
        """
        await self._check(f"start container {container_id}", "start", container_id)

    async def stop_container(self, container_id: str, timeout: int = 30) -> None:
        """
        Stop a running container.

        Args:
            container_id: Docker container ID or name
            timeout: Seconds to wait before killing container

        Raises:
            RuntimeOperationError: If stop operation fails
        """
        await self._check(
            f"stop container {container_id}", "stop", "--time", str(timeout), container_id
        )

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running

        Raises:
            RuntimeOperationError: If removal fails
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        returncode, _, stderr = await self._run(*args)

        if returncode != 0:
            # Ignore "already removed" errors
            error = stderr.decode()
            if "No such container" not in error:
                raise RuntimeOperationError(f"Failed to remove container: {error.strip()}")

    async def get_container_state(self, container_id: str) -> ContainerState:
        """
        Get the live state of a container.

        Returns:
            ContainerState with exists=False if the container is gone

        Raises:
            RuntimeUnavailableError: If the daemon cannot be reached
            RuntimeOperationError: If inspection fails for another reason
        """
        returncode, stdout, stderr = await self._run(
            "container", "inspect", "--format", "{{json .State}}", container_id
        )

        if returncode != 0:
            error = stderr.decode()
            if "No such" in error:
                return ContainerState(exists=False)
            raise RuntimeOperationError(f"Failed to inspect container {container_id}: {error.strip()}")

        try:
            state = json.loads(stdout.decode())
        except json.JSONDecodeError as e:
            raise RuntimeOperationError(f"Failed to parse container state: {e}") from e

        return ContainerState(
            exists=True,
            running=bool(state.get("Running")),
            restarting=bool(state.get("Restarting")),
            dead=bool(state.get("Dead")),
            oom_killed=bool(state.get("OOMKilled")),
            status=state.get("Status", ""),
        )

    async def exec_in_container(
        self, container_id: str, command: list[str], stdin: bytes | None = None
    ) -> ExecResult:
        """
        Run a command inside a running container.

        Args:
            container_id: Docker container ID or name
            command: Command and arguments
            stdin: Optional bytes piped to the command's standard input

        Returns:
            ExecResult with the exit code and combined output
        """
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        args.append(container_id)
        args.extend(command)

        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"Docker CLI '{self.docker_binary}' not found"
            ) from e

        stdout, _ = await process.communicate(input=stdin)
        output = stdout.decode()

        if process.returncode != 0 and any(
            marker in output for marker in DAEMON_UNREACHABLE_MARKERS
        ):
            raise RuntimeUnavailableError(f"Docker daemon unavailable: {output.strip()}")

        return ExecResult(exit_code=process.returncode, output=output)

    async def run_helper_container(
        self,
        image: str,
        volume: str,
        mount_path: str,
        command: list[str],
        stdin: bytes | None = None,
    ) -> None:
        """
        Run a disposable container against a volume and wait for it to exit.

        Used to stage files into a volume before its owning container has
        ever started.

        Raises:
            RuntimeOperationError: If the helper exits non-zero
        """
        args = ["run", "--rm"]
        if stdin is not None:
            args.append("-i")
        args.extend(["-v", f"{volume}:{mount_path}", image])
        args.extend(command)
        await self._check(f"run helper container on volume {volume}", *args, stdin=stdin)

    async def stream_logs(
        self, container_id: str, follow: bool = True, tail: str = "100"
    ) -> AsyncGenerator[str, None]:
        """
        Stream logs from a container.

        The CLI strips the daemon's stream framing, and stderr is merged into
        stdout so lines arrive already demultiplexed.

        Args:
            container_id: Docker container ID or name
            follow: If True, stream logs continuously. If False, return existing logs.
            tail: Number of trailing lines to start from, or "all"

        Yields:
            Log lines as strings
        """
        args = [self.docker_binary, "logs", "--tail", tail]
        if follow:
            args.append("--follow")
        args.append(container_id)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"Docker CLI '{self.docker_binary}' not found"
            ) from e

        assert process.stdout is not None

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace")
        finally:
            # Clean up process if still running
            if process.returncode is None:
                process.terminate()
                await process.wait()
