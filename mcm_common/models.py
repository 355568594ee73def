"""
Data models for the cloud manager registries.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Well-known identifier of the one and only proxy row
SINGLE_PROXY_ID = "main-proxy"

# Port every Minecraft container listens on inside the shared network
MINECRAFT_PORT = 25565


class ContainerStatus(str, Enum):
    """
    Lifecycle state recorded for a server or the proxy.

    creating -> running <-> stopped, with error reachable only through
    state synchronization against the container runtime.
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class MinecraftServer:
    """
    Represents one managed Minecraft server (one container + one volume).

    The name doubles as the server's alias on the shared network, so it
    must stay unique across all rows.
    """

    id: str
    name: str
    container_id: str  # Empty once the container is found to be gone
    volume_id: str
    status: ContainerStatus = ContainerStatus.CREATING
    port: int = MINECRAFT_PORT
    max_players: int = 20
    motd: str = ""
    version: str = "LATEST"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert server to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "name": self.name,
            "container_id": self.container_id,
            "volume_id": self.volume_id,
            "status": self.status.value,
            "port": self.port,
            "max_players": self.max_players,
            "motd": self.motd,
            "version": self.version,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class ProxyServer:
    """
    Represents the single Velocity proxy routing players to servers.

    default_server_id may point at a server that has since been deleted;
    such a reference is treated as unset when the routing file is built.
    """

    id: str
    name: str
    container_id: str
    volume_id: str
    status: ContainerStatus = ContainerStatus.CREATING
    port: int = MINECRAFT_PORT  # Public port published on the host
    default_server_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert proxy to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "name": self.name,
            "container_id": self.container_id,
            "volume_id": self.volume_id,
            "default_server_id": self.default_server_id,
            "status": self.status.value,
            "port": self.port,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
