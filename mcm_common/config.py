"""
Configuration for the cloud manager.

Values come from environment variables with sensible defaults; command-line
flags override them where both exist.

Environment Variables:
    MCM_DB_PATH         SQLite database path (default: ./data/mcm.db)
    MCM_API_HOST        Bind host for the API server (default: 0.0.0.0)
    MCM_API_PORT        Bind port for the API server (default: 8080)
    MCM_DOCKER_NETWORK  Shared network for proxy and servers (default: minecraft-network)
    MCM_PROXY_IMAGE     Proxy image (default: itzg/bungeecord:latest)
    MCM_SERVER_IMAGE    Minecraft server image (default: itzg/minecraft-server:latest)
    MCM_HELPER_IMAGE    Throwaway image used to stage files in volumes (default: alpine:latest)
    MCM_PROXY_PORT      Host port published by the proxy (default: 25565)
    MCM_STOP_TIMEOUT    Seconds to wait before killing a stopping container (default: 30)
    MCM_LOG_LEVEL       Logging level (default: INFO)
"""

import logging
import os
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name) or default


@dataclass(frozen=True)
class Settings:
    db_path: str = "./data/mcm.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    docker_network: str = "minecraft-network"
    proxy_image: str = "itzg/bungeecord:latest"
    server_image: str = "itzg/minecraft-server:latest"
    helper_image: str = "alpine:latest"
    proxy_port: int = 25565
    stop_timeout: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from MCM_* environment variables."""
        log_level = _env_str("MCM_LOG_LEVEL", cls.log_level).upper()
        if log_level not in LOG_LEVELS:
            logger.warning(f"Invalid MCM_LOG_LEVEL={log_level}, using default INFO")
            log_level = "INFO"

        return cls(
            db_path=_env_str("MCM_DB_PATH", cls.db_path),
            api_host=_env_str("MCM_API_HOST", cls.api_host),
            api_port=_env_int("MCM_API_PORT", cls.api_port),
            docker_network=_env_str("MCM_DOCKER_NETWORK", cls.docker_network),
            proxy_image=_env_str("MCM_PROXY_IMAGE", cls.proxy_image),
            server_image=_env_str("MCM_SERVER_IMAGE", cls.server_image),
            helper_image=_env_str("MCM_HELPER_IMAGE", cls.helper_image),
            proxy_port=_env_int("MCM_PROXY_PORT", cls.proxy_port),
            stop_timeout=_env_int("MCM_STOP_TIMEOUT", cls.stop_timeout),
            log_level=log_level,
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at process entry."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
