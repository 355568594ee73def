"""
Read-time reconciliation of recorded status against the container runtime.

Containers can be stopped, restarted or removed behind our back (docker CLI,
OOM killer, host reboot). Every read of a server or the proxy passes through
StateSynchronizer so callers always see the runtime's view, and the
correction is persisted so the next reader starts from it.
"""

import logging

from mcm_common.errors import FleetError, NotFoundError
from mcm_common.models import ContainerStatus, MinecraftServer, ProxyServer
from mcm_common.repository import FleetRepository

from .container_manager import ContainerManager, ContainerState

logger = logging.getLogger(__name__)


def resolve_status(state: ContainerState) -> ContainerStatus:
    """
    Map a live container state to a recorded status.

    First match wins: gone -> stopped, running -> running,
    restarting -> creating, dead or OOM-killed -> error, anything else
    (exited, paused, created) -> stopped.
    """
    if not state.exists:
        return ContainerStatus.STOPPED
    if state.running:
        return ContainerStatus.RUNNING
    if state.restarting:
        return ContainerStatus.CREATING
    if state.dead or state.oom_killed:
        return ContainerStatus.ERROR
    return ContainerStatus.STOPPED


class StateSynchronizer:
    """Corrects and persists server/proxy status from live container state."""

    def __init__(self, repository: FleetRepository, container_manager: ContainerManager):
        self.repository = repository
        self.container_manager = container_manager

    async def _probe(self, container_id: str) -> ContainerState:
        if not container_id:
            return ContainerState(exists=False)
        return await self.container_manager.get_container_state(container_id)

    async def _apply(self, record: MinecraftServer | ProxyServer, kind: str) -> bool:
        """
        Update record in place from the runtime.

        Returns:
            True if anything changed and needs persisting
        """
        try:
            state = await self._probe(record.container_id)
        except FleetError as e:
            logger.warning(
                f"State sync failed for {kind} {record.id}, returning last known state: {e}"
            )
            return False

        status = resolve_status(state)
        changed = False

        if not state.exists and record.container_id:
            logger.warning(
                f"Container for {kind} {record.id} ({record.name}) no longer exists"
            )
            record.container_id = ""
            changed = True

        if status != record.status:
            logger.info(
                f"Status of {kind} {record.id} ({record.name}) drifted: "
                f"{record.status.value} -> {status.value}"
            )
            record.status = status
            changed = True

        return changed

    async def sync_server(self, server: MinecraftServer) -> MinecraftServer:
        """
        Return server with its status corrected, persisting any change.

        Only status and container_id are written, and only if the stored
        status is still the one read before probing. If another request
        changed it meanwhile, the stored row is returned instead.

        Raises:
            NotFoundError: If the server was deleted while being probed
        """
        expected = server.status
        if not await self._apply(server, "server"):
            return server

        try:
            written = await self.repository.update_server_status(
                server.id, server.status, server.container_id, expected
            )
        except NotFoundError:
            raise
        except FleetError as e:
            logger.warning(f"Could not persist synced state of server {server.id}: {e}")
            return server

        if written:
            return server
        logger.debug(f"Server {server.id} changed while syncing, returning stored record")
        return await self.repository.get_server(server.id)

    async def sync_proxy(self, proxy: ProxyServer) -> ProxyServer:
        """Return proxy with its status corrected, persisting any change."""
        expected = proxy.status
        if not await self._apply(proxy, "proxy"):
            return proxy

        try:
            written = await self.repository.update_proxy_status(
                proxy.id, proxy.status, proxy.container_id, expected
            )
        except NotFoundError:
            raise
        except FleetError as e:
            logger.warning(f"Could not persist synced state of proxy: {e}")
            return proxy

        if written:
            return proxy
        return await self.repository.get_proxy(proxy.id)
