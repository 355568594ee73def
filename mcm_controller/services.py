"""
Wiring of the repository, container manager, synchronizer, reconciler and
lifecycle controller into one bundle shared by the API server and the CLI.

Construction order is leaf to root, so every component receives its
collaborators fully built.
"""

import logging
from dataclasses import dataclass

from mcm_common.config import Settings
from mcm_common.repository import FleetRepository
from mcm_persistence.sqlite_repository import SQLiteFleetRepository

from .container_manager import ContainerManager
from .proxy_reconciler import ProxyReconciler
from .server_controller import ServerController
from .state_sync import StateSynchronizer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    repository: FleetRepository
    container_manager: ContainerManager
    synchronizer: StateSynchronizer
    reconciler: ProxyReconciler
    controller: ServerController

    async def close(self) -> None:
        await self.repository.close()


def build_services(
    settings: Settings,
    repository: FleetRepository,
    container_manager: ContainerManager,
) -> Services:
    """Assemble services around an already-initialized repository."""
    synchronizer = StateSynchronizer(repository, container_manager)
    reconciler = ProxyReconciler(repository, container_manager, synchronizer, settings)
    controller = ServerController(
        repository, container_manager, synchronizer, reconciler, settings
    )
    return Services(
        settings=settings,
        repository=repository,
        container_manager=container_manager,
        synchronizer=synchronizer,
        reconciler=reconciler,
        controller=controller,
    )


async def open_services(
    settings: Settings, container_manager: ContainerManager | None = None
) -> Services:
    """
    Open the database (creating the schema if needed) and build services.

    Args:
        settings: Resolved configuration
        container_manager: Runtime provider to use instead of the docker CLI

    Returns:
        Services ready for use; call close() when done
    """
    repository = SQLiteFleetRepository(settings.db_path)
    await repository.initialize()
    logger.info(f"Using database {settings.db_path}")

    return build_services(settings, repository, container_manager or ContainerManager())
