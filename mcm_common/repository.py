"""
Abstract repository interfaces for server and proxy persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.

Every lookup that misses raises NotFoundError instead of returning None, so
callers never have to distinguish "absent" from "falsy".
"""

from abc import ABC, abstractmethod

from .models import ContainerStatus, MinecraftServer, ProxyServer


class ServerRepository(ABC):
    """
    Abstract base class for Minecraft server storage operations.

    Implementations must provide async-safe access to server rows and
    enforce name uniqueness at the storage layer.
    """

    @abstractmethod
    async def create_server(self, server: MinecraftServer) -> None:
        """
        Persist a new server.

        Args:
            server: Server object to persist

        Raises:
            ConflictError: If the id or the name is already taken
        """
        pass

    @abstractmethod
    async def get_server(self, server_id: str) -> MinecraftServer:
        """
        Retrieve a server by its ID.

        Args:
            server_id: UUID of the server

        Returns:
            The stored server

        Raises:
            NotFoundError: If no server has this id
        """
        pass

    @abstractmethod
    async def get_server_by_name(self, name: str) -> MinecraftServer:
        """
        Retrieve a server by its unique name.

        Raises:
            NotFoundError: If no server has this name
        """
        pass

    @abstractmethod
    async def list_servers(self) -> list[MinecraftServer]:
        """
        List all servers in creation order.

        Returns:
            List of servers, possibly empty
        """
        pass

    @abstractmethod
    async def update_server(self, server: MinecraftServer) -> None:
        """
        Replace the stored row with the given object.

        Args:
            server: Server carrying the full new state

        Raises:
            NotFoundError: If the server does not exist
            ConflictError: If the new name is already taken
        """
        pass

    @abstractmethod
    async def update_server_status(
        self,
        server_id: str,
        status: ContainerStatus,
        container_id: str,
        expected_status: ContainerStatus,
    ) -> bool:
        """
        Write only status and container_id, if the stored status is still
        expected_status.

        Other columns are left alone, so a concurrent settings update is
        never overwritten.

        Returns:
            True if the row was written, False if its status had moved on

        Raises:
            NotFoundError: If the server does not exist
        """
        pass

    @abstractmethod
    async def delete_server(self, server_id: str) -> None:
        """
        Permanently remove a server row.

        Raises:
            NotFoundError: If the server does not exist
        """
        pass


class ProxyRepository(ABC):
    """
    Abstract base class for proxy storage operations.

    At most one proxy row may exist; implementations must reject a second
    row rather than rely on callers checking first.
    """

    @abstractmethod
    async def create_proxy(self, proxy: ProxyServer) -> None:
        """
        Persist the proxy.

        Raises:
            ConflictError: If a proxy row already exists
        """
        pass

    @abstractmethod
    async def get_proxy(self, proxy_id: str) -> ProxyServer:
        """
        Retrieve the proxy by its ID.

        Raises:
            NotFoundError: If the proxy does not exist
        """
        pass

    @abstractmethod
    async def get_proxy_by_name(self, name: str) -> ProxyServer:
        """
        Retrieve the proxy by its display name.

        Raises:
            NotFoundError: If no proxy has this name
        """
        pass

    @abstractmethod
    async def list_proxies(self) -> list[ProxyServer]:
        """List all proxy rows (zero or one)."""
        pass

    @abstractmethod
    async def update_proxy(self, proxy: ProxyServer) -> None:
        """
        Replace the stored proxy row with the given object.

        Raises:
            NotFoundError: If the proxy does not exist
        """
        pass

    @abstractmethod
    async def update_proxy_status(
        self,
        proxy_id: str,
        status: ContainerStatus,
        container_id: str,
        expected_status: ContainerStatus,
    ) -> bool:
        """
        Conditional status write, as update_server_status.

        Raises:
            NotFoundError: If the proxy does not exist
        """
        pass

    @abstractmethod
    async def delete_proxy(self, proxy_id: str) -> None:
        """
        Permanently remove the proxy row.

        Raises:
            NotFoundError: If the proxy does not exist
        """
        pass


class FleetRepository(ServerRepository, ProxyRepository):
    """Both registries behind one connection, as used by the services."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""
        pass
