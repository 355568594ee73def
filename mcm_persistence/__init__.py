"""
MCM Persistence module.

This module contains the database implementation for server and proxy storage.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on mcm_common for domain models and interfaces,
and is used by the controller, the API server and the CLI.
"""

from .sqlite_repository import SQLiteFleetRepository

__all__ = ["SQLiteFleetRepository"]
