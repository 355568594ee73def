"""
MCM Common module.

This module contains shared domain models, the error taxonomy and the
repository interfaces used across the cloud manager components
(persistence, controller, api, cli).

The common module has no dependencies on other mcm_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    ConfigDeploymentError,
    ConflictError,
    FleetError,
    NotFoundError,
    RuntimeOperationError,
    RuntimeUnavailableError,
    ValidationError,
)
from .models import SINGLE_PROXY_ID, ContainerStatus, MinecraftServer, ProxyServer
from .repository import FleetRepository, ProxyRepository, ServerRepository

__all__ = [
    "ConfigDeploymentError",
    "ConflictError",
    "ContainerStatus",
    "FleetError",
    "FleetRepository",
    "MinecraftServer",
    "NotFoundError",
    "ProxyRepository",
    "ProxyServer",
    "RuntimeOperationError",
    "RuntimeUnavailableError",
    "SINGLE_PROXY_ID",
    "ServerRepository",
    "ValidationError",
]
