"""
Proxy topology reconciler.

Keeps the single Velocity proxy consistent with the set of Minecraft servers:
- the proxy is created lazily on first access and never duplicated
- every server is attached to the shared network under its own name
- the proxy's routing file is rebuilt from the registry and written into the
  running proxy container on demand

Every step is idempotent, so callers may retry any of them.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from mcm_common.config import Settings
from mcm_common.errors import (
    ConfigDeploymentError,
    FleetError,
    NotFoundError,
    RuntimeOperationError,
    ValidationError,
)
from mcm_common.models import (
    SINGLE_PROXY_ID,
    ContainerStatus,
    MinecraftServer,
    ProxyServer,
)
from mcm_common.repository import FleetRepository

from .container_manager import ContainerManager, ContainerSpec
from .state_sync import StateSynchronizer
from .velocity_config import VELOCITY_CONFIG_PATH, render_velocity_config

logger = logging.getLogger(__name__)

PROXY_NAME = "Main Proxy"
PROXY_RESOURCE_NAME = "mc-proxy-main"
PROXY_DATA_PATH = "/server"
PROXY_INTERNAL_PORT = "25577/tcp"
PROXY_ALIASES = ["velocity-proxy", "proxy"]
NETWORK_LABELS = {"minecraft-network": "true"}

CleanupStep = tuple[str, Callable[[], Awaitable[None]]]


class ProxyReconciler:
    """
    Owns the singleton proxy, the shared network and the routing file.

    Passed explicitly to the lifecycle controller and the API layer; there
    is no module-level instance.
    """

    def __init__(
        self,
        repository: FleetRepository,
        container_manager: ContainerManager,
        synchronizer: StateSynchronizer,
        settings: Settings,
    ):
        self.repository = repository
        self.container_manager = container_manager
        self.synchronizer = synchronizer
        self.settings = settings
        self._ensure_lock = asyncio.Lock()

    @property
    def network(self) -> str:
        return self.settings.docker_network

    async def ensure_network(self) -> None:
        """Create the shared bridge network if it does not exist yet."""
        if self.network in await self.container_manager.list_networks():
            return

        try:
            await self.container_manager.create_network(
                self.network, driver="bridge", labels=NETWORK_LABELS
            )
            logger.info(f"Created network {self.network}")
        except RuntimeOperationError:
            # Another caller may have created it in the meantime
            if self.network not in await self.container_manager.list_networks():
                raise

    async def proxy_exists(self) -> bool:
        """Check the registry for the proxy without creating it."""
        try:
            await self.repository.get_proxy(SINGLE_PROXY_ID)
        except NotFoundError:
            return False
        return True

    async def ensure_proxy_exists(self) -> ProxyServer:
        """
        Return the proxy, provisioning it first if it does not exist.

        Safe to call concurrently: callers in this process are serialized,
        and a row written by another process wins over our own attempt.

        A row whose container was removed outside the manager (cleared by
        state sync) gets a fresh container under the same record.
        """
        async with self._ensure_lock:
            try:
                proxy = await self.repository.get_proxy(SINGLE_PROXY_ID)
            except NotFoundError:
                return await self._provision_proxy()

            if proxy.container_id:
                return proxy
            return await self._provision_proxy(existing=proxy)

    async def _provision_proxy(self, existing: ProxyServer | None = None) -> ProxyServer:
        if existing is None:
            logger.info("No proxy found, provisioning one")
        else:
            logger.warning("Proxy container is gone, provisioning a replacement")
        cm = self.container_manager
        cleanup: list[CleanupStep] = []
        persisted = False

        try:
            volume = await cm.create_volume(
                PROXY_RESOURCE_NAME, labels={"minecraft-proxy-id": SINGLE_PROXY_ID}
            )
            if existing is None:
                cleanup.append((f"volume {volume}", lambda: cm.remove_volume(volume)))

            await cm.pull_image(self.settings.proxy_image)
            await self.ensure_network()

            container_id = await cm.create_container(
                ContainerSpec(
                    name=PROXY_RESOURCE_NAME,
                    image=self.settings.proxy_image,
                    volume=volume,
                    mount_path=PROXY_DATA_PATH,
                    env={"TYPE": "VELOCITY", "MEMORY": "512M"},
                    labels={"minecraft-proxy-id": SINGLE_PROXY_ID},
                    ports={PROXY_INTERNAL_PORT: self.settings.proxy_port},
                    network=self.network,
                    aliases=PROXY_ALIASES,
                )
            )
            cleanup.append(
                (
                    f"container {container_id[:12]}",
                    lambda: cm.remove_container(container_id, force=True),
                )
            )

            if existing is None:
                proxy = ProxyServer(
                    id=SINGLE_PROXY_ID,
                    name=PROXY_NAME,
                    container_id=container_id,
                    volume_id=volume,
                    status=ContainerStatus.CREATING,
                    port=self.settings.proxy_port,
                )
                await self.repository.create_proxy(proxy)
                persisted = True
                cleanup.append(
                    ("proxy record", lambda: self.repository.delete_proxy(SINGLE_PROXY_ID))
                )
            else:
                # Keeps default_server_id and created_at
                proxy = existing
                proxy.container_id = container_id
                proxy.volume_id = volume
                proxy.status = ContainerStatus.CREATING
                proxy.port = self.settings.proxy_port
                await self.repository.update_proxy(proxy)
                persisted = True
                cleanup.append(
                    (
                        "proxy container reference",
                        lambda: self.repository.update_proxy_status(
                            SINGLE_PROXY_ID,
                            ContainerStatus.STOPPED,
                            "",
                            ContainerStatus.CREATING,
                        ),
                    )
                )

            await cm.start_container(container_id)
            proxy.status = ContainerStatus.RUNNING
            await self.repository.update_proxy(proxy)

        except Exception as e:
            await self._rollback(cleanup)
            if existing is None and not persisted:
                # Lost a creation race: the winner's row is the proxy
                try:
                    winner = await self.repository.get_proxy(SINGLE_PROXY_ID)
                except NotFoundError:
                    winner = None
                if winner is not None:
                    logger.info("Proxy was created concurrently, using existing record")
                    return winner
            logger.error(f"Failed to provision proxy: {e}", exc_info=True)
            raise

        logger.info(f"Proxy {proxy.id} provisioned and running ({container_id[:12]})")
        return proxy

    async def _rollback(self, cleanup: list[CleanupStep]) -> None:
        """Undo provisioned resources in reverse order, best-effort."""
        for description, undo in reversed(cleanup):
            try:
                await undo()
                logger.info(f"Rolled back {description}")
            except Exception as e:
                logger.warning(f"Failed to roll back {description}: {e}")

    async def get_proxy(self) -> ProxyServer:
        """Ensure the proxy exists and return it with its status synced."""
        proxy = await self.ensure_proxy_exists()
        return await self.synchronizer.sync_proxy(proxy)

    async def update_proxy(self, default_server_id: str | None) -> ProxyServer:
        """
        Set or clear the default server players land on.

        Raises:
            ValidationError: If default_server_id names no existing server
        """
        proxy = await self.ensure_proxy_exists()

        if default_server_id is not None:
            try:
                await self.repository.get_server(default_server_id)
            except NotFoundError as e:
                raise ValidationError(
                    f"Default server {default_server_id} does not exist"
                ) from e

        proxy.default_server_id = default_server_id
        await self.repository.update_proxy(proxy)
        logger.info(f"Proxy default server set to {default_server_id}")

        await self.refresh_routing()
        return await self.synchronizer.sync_proxy(proxy)

    async def start_proxy(self) -> ProxyServer:
        """Start the proxy container (provisioning it if needed)."""
        proxy = await self.ensure_proxy_exists()
        if not proxy.container_id:
            raise RuntimeOperationError("Proxy container no longer exists")

        await self.container_manager.start_container(proxy.container_id)
        proxy.status = ContainerStatus.RUNNING
        await self.repository.update_proxy(proxy)
        logger.info("Proxy started")

        await self.refresh_routing()
        return proxy

    async def stop_proxy(self) -> ProxyServer:
        """
        Stop the proxy container.

        Raises:
            NotFoundError: If the proxy was never created
        """
        proxy = await self.repository.get_proxy(SINGLE_PROXY_ID)
        if not proxy.container_id:
            raise RuntimeOperationError("Proxy container no longer exists")

        await self.container_manager.stop_container(
            proxy.container_id, timeout=self.settings.stop_timeout
        )
        proxy.status = ContainerStatus.STOPPED
        await self.repository.update_proxy(proxy)
        logger.info("Proxy stopped")
        return proxy

    async def connect_server(self, server: MinecraftServer) -> None:
        """
        Attach a server's container to the shared network, aliased by name.

        A no-op if the container is already attached.
        """
        await self.ensure_network()

        attachments = await self.container_manager.get_container_networks(server.container_id)
        if self.network in attachments:
            logger.debug(f"Server {server.name} already on network {self.network}")
            return

        await self.container_manager.connect_network(
            self.network, server.container_id, aliases=[server.name]
        )
        logger.info(f"Connected server {server.name} to network {self.network}")

    async def _resolve_default_name(self, proxy: ProxyServer) -> str | None:
        if not proxy.default_server_id:
            return None
        try:
            server = await self.repository.get_server(proxy.default_server_id)
        except NotFoundError:
            logger.warning(
                f"Default server {proxy.default_server_id} no longer exists, "
                "routing to all servers"
            )
            return None
        return server.name

    async def render_config(self) -> str:
        """
        Build the routing document from the current registry contents.

        Raises:
            NotFoundError: If the proxy does not exist
        """
        proxy = await self.repository.get_proxy(SINGLE_PROXY_ID)
        servers = await self.repository.list_servers()
        default_name = await self._resolve_default_name(proxy)
        return render_velocity_config([s.name for s in servers], default_name)

    async def regenerate_config(self) -> str:
        """
        Rebuild the routing document and write it into the running proxy.

        Returns:
            The deployed document

        Raises:
            NotFoundError: If the proxy does not exist
            ConfigDeploymentError: If the proxy isn't running or the write fails
        """
        proxy = await self.repository.get_proxy(SINGLE_PROXY_ID)
        document = await self.render_config()

        if not proxy.container_id:
            raise ConfigDeploymentError("Proxy container no longer exists")
        state = await self.container_manager.get_container_state(proxy.container_id)
        if not state.running:
            raise ConfigDeploymentError("Proxy container is not running")

        result = await self.container_manager.exec_in_container(
            proxy.container_id,
            ["sh", "-c", f"cat > {VELOCITY_CONFIG_PATH}"],
            stdin=document.encode(),
        )
        if result.exit_code != 0:
            raise ConfigDeploymentError(
                f"Failed to write proxy config (exit {result.exit_code}): "
                f"{result.output.strip()}"
            )

        logger.info(f"Deployed proxy config to {VELOCITY_CONFIG_PATH}")
        return document

    async def refresh_routing(self) -> None:
        """Regenerate the routing file if a proxy exists, logging any failure."""
        try:
            if not await self.proxy_exists():
                logger.debug("No proxy, skipping config regeneration")
                return
            await self.regenerate_config()
        except FleetError as e:
            logger.warning(f"Proxy config regeneration failed: {e}")
