"""
Lifecycle controller for Minecraft servers.

Handles create/start/stop/update/delete of servers and hands network wiring
and routing-file regeneration to the ProxyReconciler after each mutation.
Reconciler steps that follow a successful mutation are best-effort: their
failures are logged and never undo the mutation itself.
"""

import asyncio
import json
import logging
import re
import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from mcm_common.config import Settings
from mcm_common.errors import (
    ConflictError,
    FleetError,
    NotFoundError,
    RuntimeOperationError,
    ValidationError,
)
from mcm_common.models import ContainerStatus, MinecraftServer
from mcm_common.repository import FleetRepository

from .container_manager import ContainerManager, ContainerSpec
from .proxy_reconciler import ProxyReconciler
from .state_sync import StateSynchronizer

logger = logging.getLogger(__name__)

# Valid as a Docker network alias and as a bare TOML key
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$")
# Would collide with the try list inside [servers]
RESERVED_NAMES = {"try"}

MIN_PLAYERS = 1
MAX_PLAYERS = 1000
DEFAULT_MAX_PLAYERS = 20
DEFAULT_VERSION = "LATEST"

SERVER_DATA_PATH = "/data"
PATCH_DIR = "/data/patches"
PATCH_FILE = "bungeecord.json"
BUNGEECORD_PATCH = {
    "file": "/data/spigot.yml",
    "ops": [
        {
            "$set": {
                "path": "$.settings.bungeecord",
                "value": True,
                "value-type": "bool",
            }
        }
    ],
}
COMMAND_RUNNER = "rcon-cli"


def resource_name(server_id: str) -> str:
    """Container and volume name for a server."""
    return f"mc-server-{server_id}"


def validate_name(name: str) -> None:
    if not NAME_PATTERN.match(name or ""):
        raise ValidationError(
            f"Invalid server name '{name}': use 1-63 letters, digits, '-' or '_', "
            "starting with a letter or digit"
        )
    if name in RESERVED_NAMES:
        raise ValidationError(f"Server name '{name}' is reserved")


def validate_max_players(max_players: int) -> None:
    if not MIN_PLAYERS <= max_players <= MAX_PLAYERS:
        raise ValidationError(
            f"max_players must be between {MIN_PLAYERS} and {MAX_PLAYERS}, got {max_players}"
        )


class ServerController:
    """
    Drives the lifecycle of Minecraft server containers.

    The reconciler is built first and handed in, so nothing here needs a
    late-bound back-reference.
    """

    def __init__(
        self,
        repository: FleetRepository,
        container_manager: ContainerManager,
        synchronizer: StateSynchronizer,
        reconciler: ProxyReconciler,
        settings: Settings,
    ):
        self.repository = repository
        self.container_manager = container_manager
        self.synchronizer = synchronizer
        self.reconciler = reconciler
        self.settings = settings
        # server id -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _server_lock(self, server_id: str) -> AsyncIterator[None]:
        """
        Serialize mutations on the same server id.

        The entry is dropped once nobody holds or waits for it, so ids that
        turn out not to exist leave nothing behind.
        """
        lock, users = self._locks.get(server_id, (asyncio.Lock(), 0))
        self._locks[server_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[server_id]
            if users == 1:
                del self._locks[server_id]
            else:
                self._locks[server_id] = (lock, users - 1)

    # Reads

    async def get_server(self, server_id: str) -> MinecraftServer:
        server = await self.repository.get_server(server_id)
        return await self.synchronizer.sync_server(server)

    async def list_servers(self) -> list[MinecraftServer]:
        servers = []
        for server in await self.repository.list_servers():
            try:
                servers.append(await self.synchronizer.sync_server(server))
            except NotFoundError:
                logger.debug(f"Server {server.id} was deleted while listing, skipping")
        return servers

    # Create

    async def create_server(
        self,
        name: str,
        max_players: int | None = None,
        motd: str | None = None,
        version: str | None = None,
    ) -> MinecraftServer:
        """
        Provision a new server: volume, container and registry row.

        All-or-nothing up to the registry write. Proxy wiring afterwards
        (patch staging, network attach, routing refresh) is best-effort.

        Raises:
            ValidationError: If a field is invalid
            ConflictError: If the name is already taken
        """
        validate_name(name)
        if max_players is None:
            max_players = DEFAULT_MAX_PLAYERS
        validate_max_players(max_players)
        motd = motd or f"Minecraft Server - {name}"
        version = version or DEFAULT_VERSION

        try:
            await self.repository.get_server_by_name(name)
            raise ConflictError(f"Server with name '{name}' already exists")
        except NotFoundError:
            pass

        server_id = str(uuid.uuid4())
        resources = resource_name(server_id)
        behind_proxy = await self.reconciler.proxy_exists()

        env = {
            "EULA": "TRUE",
            "MAX_PLAYERS": str(max_players),
            "MOTD": motd,
            "VERSION": version,
            "TYPE": "PAPER",
        }
        if behind_proxy:
            # Trust the identity forwarded by the proxy
            env["ONLINE_MODE"] = "FALSE"
            env["PATCH_DEFINITIONS"] = PATCH_DIR

        cm = self.container_manager
        volume = await cm.create_volume(resources, labels={"minecraft-server-id": server_id})

        try:
            await cm.pull_image(self.settings.server_image)
            container_id = await cm.create_container(
                ContainerSpec(
                    name=resources,
                    image=self.settings.server_image,
                    volume=volume,
                    mount_path=SERVER_DATA_PATH,
                    env=env,
                    labels={
                        "minecraft-server-id": server_id,
                        "minecraft-server-name": name,
                    },
                )
            )
        except Exception:
            await self._discard(volume=volume)
            raise

        server = MinecraftServer(
            id=server_id,
            name=name,
            container_id=container_id,
            volume_id=volume,
            status=ContainerStatus.CREATING,
            max_players=max_players,
            motd=motd,
            version=version,
        )
        try:
            await self.repository.create_server(server)
        except Exception:
            await self._discard(container_id=container_id, volume=volume)
            raise

        logger.info(f"Server {server.name} created ({server.id})")

        if behind_proxy:
            await self._stage_proxy_patch(server)
        await self._connect(server)
        if behind_proxy:
            await self.reconciler.refresh_routing()

        return server

    async def _discard(self, container_id: str | None = None, volume: str | None = None) -> None:
        """Roll back a half-provisioned server, best-effort."""
        if container_id:
            try:
                await self.container_manager.remove_container(container_id, force=True)
            except FleetError as e:
                logger.warning(f"Failed to roll back container {container_id[:12]}: {e}")
        if volume:
            try:
                await self.container_manager.remove_volume(volume)
            except FleetError as e:
                logger.warning(f"Failed to roll back volume {volume}: {e}")

    async def _stage_proxy_patch(self, server: MinecraftServer) -> None:
        """Write the bungeecord patch into the volume before first boot."""
        try:
            await self.container_manager.pull_image(self.settings.helper_image)
            await self.container_manager.run_helper_container(
                self.settings.helper_image,
                server.volume_id,
                SERVER_DATA_PATH,
                ["sh", "-c", f"mkdir -p {PATCH_DIR} && cat > {PATCH_DIR}/{PATCH_FILE}"],
                stdin=json.dumps(BUNGEECORD_PATCH, indent=2).encode(),
            )
            logger.info(f"Staged proxy patch for server {server.name}")
        except FleetError as e:
            logger.warning(f"Failed to stage proxy patch for server {server.name}: {e}")

    async def _connect(self, server: MinecraftServer) -> None:
        try:
            await self.reconciler.connect_server(server)
        except FleetError as e:
            logger.warning(f"Failed to connect server {server.name} to network: {e}")

    # Mutations

    async def update_server(
        self,
        server_id: str,
        max_players: int | None = None,
        motd: str | None = None,
        version: str | None = None,
    ) -> MinecraftServer:
        """
        Change a server's settings on record.

        The running container keeps its environment until it is recreated.
        """
        if max_players is not None:
            validate_max_players(max_players)
        if motd is not None and not motd.strip():
            raise ValidationError("motd must not be empty")
        if version is not None and not version.strip():
            raise ValidationError("version must not be empty")

        async with self._server_lock(server_id):
            server = await self.repository.get_server(server_id)
            if max_players is not None:
                server.max_players = max_players
            if motd is not None:
                server.motd = motd
            if version is not None:
                server.version = version
            await self.repository.update_server(server)

        logger.info(f"Server {server.name} updated")
        return await self.synchronizer.sync_server(server)

    async def start_server(self, server_id: str) -> MinecraftServer:
        async with self._server_lock(server_id):
            server = await self.repository.get_server(server_id)
            if not server.container_id:
                raise RuntimeOperationError(
                    f"Container for server {server.name} no longer exists"
                )

            await self.container_manager.start_container(server.container_id)
            server.status = ContainerStatus.RUNNING
            await self.repository.update_server(server)
            logger.info(f"Server {server.name} started")

            await self._connect(server)
            await self.reconciler.refresh_routing()
            return server

    async def stop_server(self, server_id: str) -> MinecraftServer:
        async with self._server_lock(server_id):
            server = await self.repository.get_server(server_id)
            if not server.container_id:
                raise RuntimeOperationError(
                    f"Container for server {server.name} no longer exists"
                )

            await self.container_manager.stop_container(
                server.container_id, timeout=self.settings.stop_timeout
            )
            server.status = ContainerStatus.STOPPED
            await self.repository.update_server(server)
            logger.info(f"Server {server.name} stopped")

            await self.reconciler.refresh_routing()
            return server

    async def delete_server(self, server_id: str) -> MinecraftServer:
        """
        Delete a server and everything it owns.

        Runtime objects go first and the row last, so an interrupted delete
        leaves a discoverable container rather than a row pointing at nothing.
        """
        async with self._server_lock(server_id):
            server = await self.repository.get_server(server_id)
            cm = self.container_manager

            if server.container_id:
                try:
                    await cm.stop_container(server.container_id, timeout=self.settings.stop_timeout)
                except FleetError as e:
                    logger.debug(f"Stop before delete of {server.name} failed: {e}")
                await cm.remove_container(server.container_id, force=True)

            if server.volume_id:
                await cm.remove_volume(server.volume_id)

            await self.repository.delete_server(server_id)
            logger.info(f"Server {server.name} deleted ({server_id})")

        await self.reconciler.refresh_routing()
        return server

    # Console

    async def execute_command(self, server_id: str, command: str) -> str:
        """
        Run a console command through the in-image RCON client.

        Returns:
            The combined command output

        Raises:
            RuntimeOperationError: If the command exits non-zero
        """
        if not command or not command.strip():
            raise ValidationError("command must not be empty")

        server = await self.repository.get_server(server_id)
        if not server.container_id:
            raise RuntimeOperationError(f"Container for server {server.name} no longer exists")

        result = await self.container_manager.exec_in_container(
            server.container_id, [COMMAND_RUNNER, command]
        )
        if result.exit_code != 0:
            raise RuntimeOperationError(
                f"Command failed (exit {result.exit_code}): {result.output.strip()}"
            )

        logger.info(f"Executed command on server {server.name}: {command}")
        return result.output

    async def stream_logs(
        self, server_id: str, follow: bool = True, tail: str = "100"
    ) -> AsyncGenerator[str, None]:
        """
        Stream a server's console output line by line.

        Raises:
            NotFoundError: If the server does not exist (raised on first iteration)
        """
        server = await self.repository.get_server(server_id)
        if not server.container_id:
            raise RuntimeOperationError(f"Container for server {server.name} no longer exists")

        async for line in self.container_manager.stream_logs(
            server.container_id, follow=follow, tail=tail
        ):
            yield line
