"""
SQLite implementation of the server and proxy repositories.

Uses aiosqlite for async operations over a single shared connection.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import logging
import os
from datetime import datetime

import aiosqlite

from mcm_common.errors import ConflictError, NotFoundError
from mcm_common.models import (
    SINGLE_PROXY_ID,
    ContainerStatus,
    MinecraftServer,
    ProxyServer,
    utc_now,
)
from mcm_common.repository import FleetRepository

logger = logging.getLogger(__name__)

SERVER_COLUMNS = (
    "id, name, container_id, volume_id, status, port, max_players, motd, "
    "version, created_at, updated_at"
)
PROXY_COLUMNS = (
    "id, name, container_id, volume_id, default_server_id, status, port, "
    "created_at, updated_at"
)


def _row_to_server(row: aiosqlite.Row) -> MinecraftServer:
    (
        server_id,
        name,
        container_id,
        volume_id,
        status,
        port,
        max_players,
        motd,
        version,
        created_at,
        updated_at,
    ) = row
    return MinecraftServer(
        id=server_id,
        name=name,
        container_id=container_id or "",
        volume_id=volume_id or "",
        status=ContainerStatus(status),
        port=port,
        max_players=max_players,
        motd=motd,
        version=version,
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
    )


def _row_to_proxy(row: aiosqlite.Row) -> ProxyServer:
    (
        proxy_id,
        name,
        container_id,
        volume_id,
        default_server_id,
        status,
        port,
        created_at,
        updated_at,
    ) = row
    return ProxyServer(
        id=proxy_id,
        name=name,
        container_id=container_id or "",
        volume_id=volume_id or "",
        default_server_id=default_server_id,
        status=ContainerStatus(status),
        port=port,
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
    )


class SQLiteFleetRepository(FleetRepository):
    """
    SQLite-based storage for both registries.

    Uses a single database file with two tables:
    - servers: One row per Minecraft server, name is UNIQUE
    - proxies: At most one row, pinned to the well-known proxy id by a CHECK
    """

    def __init__(self, db_path: str = "./data/mcm.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
            self._connection = await aiosqlite.connect(self.db_path)
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - servers table: Server records with a unique name column
        - proxies table: The singleton proxy record
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS servers (
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                container_id TEXT,
                volume_id TEXT,
                status TEXT NOT NULL,
                port INTEGER NOT NULL,
                max_players INTEGER NOT NULL,
                motd TEXT NOT NULL,
                version TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS proxies (
                id TEXT PRIMARY KEY CHECK (id = '{SINGLE_PROXY_ID}'),
                name TEXT NOT NULL,
                container_id TEXT,
                volume_id TEXT,
                default_server_id TEXT,
                status TEXT NOT NULL,
                port INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.commit()
        logger.debug(f"Database schema ready at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Server methods

    async def create_server(self, server: MinecraftServer) -> None:
        conn = await self._get_connection()
        try:
            await conn.execute(
                f"INSERT INTO servers ({SERVER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    server.id,
                    server.name,
                    server.container_id,
                    server.volume_id,
                    server.status.value,
                    server.port,
                    server.max_players,
                    server.motd,
                    server.version,
                    server.created_at.isoformat(),
                    server.updated_at.isoformat(),
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise ConflictError(
                f"Server with name '{server.name}' already exists"
            ) from e
        logger.debug(f"Server created in database: {server.id} ({server.name})")

    async def get_server(self, server_id: str) -> MinecraftServer:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {SERVER_COLUMNS} FROM servers WHERE id = ?", (server_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Server {server_id} not found")
        return _row_to_server(row)

    async def get_server_by_name(self, name: str) -> MinecraftServer:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {SERVER_COLUMNS} FROM servers WHERE name = ?", (name,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Server '{name}' not found")
        return _row_to_server(row)

    async def list_servers(self) -> list[MinecraftServer]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {SERVER_COLUMNS} FROM servers ORDER BY created_at, rowid"
        )
        rows = await cursor.fetchall()
        return [_row_to_server(row) for row in rows]

    async def update_server(self, server: MinecraftServer) -> None:
        conn = await self._get_connection()
        server.updated_at = utc_now()
        try:
            cursor = await conn.execute(
                """
                UPDATE servers
                SET name = ?, container_id = ?, volume_id = ?, status = ?, port = ?,
                    max_players = ?, motd = ?, version = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    server.name,
                    server.container_id,
                    server.volume_id,
                    server.status.value,
                    server.port,
                    server.max_players,
                    server.motd,
                    server.version,
                    server.updated_at.isoformat(),
                    server.id,
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise ConflictError(
                f"Server with name '{server.name}' already exists"
            ) from e
        if cursor.rowcount == 0:
            raise NotFoundError(f"Server {server.id} not found")
        logger.debug(f"Server updated in database: {server.id} (status={server.status.value})")

    async def update_server_status(
        self,
        server_id: str,
        status: ContainerStatus,
        container_id: str,
        expected_status: ContainerStatus,
    ) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            UPDATE servers SET status = ?, container_id = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                container_id,
                utc_now().isoformat(),
                server_id,
                expected_status.value,
            ),
        )
        await conn.commit()
        if cursor.rowcount == 0:
            # Either gone (raises) or changed by someone else since it was read
            await self.get_server(server_id)
            return False
        logger.debug(f"Server status updated in database: {server_id} ({status.value})")
        return True

    async def delete_server(self, server_id: str) -> None:
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
        await conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Server {server_id} not found")
        logger.debug(f"Server deleted from database: {server_id}")

    # Proxy methods

    async def create_proxy(self, proxy: ProxyServer) -> None:
        conn = await self._get_connection()
        try:
            await conn.execute(
                f"INSERT INTO proxies ({PROXY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    proxy.id,
                    proxy.name,
                    proxy.container_id,
                    proxy.volume_id,
                    proxy.default_server_id,
                    proxy.status.value,
                    proxy.port,
                    proxy.created_at.isoformat(),
                    proxy.updated_at.isoformat(),
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise ConflictError("A proxy already exists") from e
        logger.debug(f"Proxy created in database: {proxy.id}")

    async def get_proxy(self, proxy_id: str) -> ProxyServer:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {PROXY_COLUMNS} FROM proxies WHERE id = ?", (proxy_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("Proxy not found")
        return _row_to_proxy(row)

    async def get_proxy_by_name(self, name: str) -> ProxyServer:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {PROXY_COLUMNS} FROM proxies WHERE name = ?", (name,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Proxy '{name}' not found")
        return _row_to_proxy(row)

    async def list_proxies(self) -> list[ProxyServer]:
        conn = await self._get_connection()
        cursor = await conn.execute(f"SELECT {PROXY_COLUMNS} FROM proxies")
        rows = await cursor.fetchall()
        return [_row_to_proxy(row) for row in rows]

    async def update_proxy(self, proxy: ProxyServer) -> None:
        conn = await self._get_connection()
        proxy.updated_at = utc_now()
        cursor = await conn.execute(
            """
            UPDATE proxies
            SET name = ?, container_id = ?, volume_id = ?, default_server_id = ?,
                status = ?, port = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                proxy.name,
                proxy.container_id,
                proxy.volume_id,
                proxy.default_server_id,
                proxy.status.value,
                proxy.port,
                proxy.updated_at.isoformat(),
                proxy.id,
            ),
        )
        await conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Proxy not found")
        logger.debug(f"Proxy updated in database: {proxy.id} (status={proxy.status.value})")

    async def update_proxy_status(
        self,
        proxy_id: str,
        status: ContainerStatus,
        container_id: str,
        expected_status: ContainerStatus,
    ) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            UPDATE proxies SET status = ?, container_id = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                container_id,
                utc_now().isoformat(),
                proxy_id,
                expected_status.value,
            ),
        )
        await conn.commit()
        if cursor.rowcount == 0:
            await self.get_proxy(proxy_id)
            return False
        logger.debug(f"Proxy status updated in database: {proxy_id} ({status.value})")
        return True

    async def delete_proxy(self, proxy_id: str) -> None:
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM proxies WHERE id = ?", (proxy_id,))
        await conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Proxy not found")
        logger.debug(f"Proxy deleted from database: {proxy_id}")
