"""
MCM Controller module.

This module contains the Docker container manager, the read-time state
synchronizer, the proxy topology reconciler and the server lifecycle
controller. The API server and the CLI both drive the fleet through these
components, wired together by open_services().
"""

from .container_manager import ContainerManager, ContainerSpec, ContainerState, ExecResult
from .proxy_reconciler import ProxyReconciler
from .server_controller import ServerController
from .services import Services, build_services, open_services
from .state_sync import StateSynchronizer, resolve_status
from .velocity_config import render_velocity_config

__all__ = [
    "ContainerManager",
    "ContainerSpec",
    "ContainerState",
    "ExecResult",
    "ProxyReconciler",
    "ServerController",
    "Services",
    "StateSynchronizer",
    "build_services",
    "open_services",
    "render_velocity_config",
    "resolve_status",
]
