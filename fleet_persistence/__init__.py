"""
Fleet Persistence module.

This module contains the database implementation for templates and fleet
membership. Currently supports SQLite, but can be extended to PostgreSQL,
MySQL, etc.

The persistence layer depends on fleet_common for domain models and
interfaces, and is used by the server and the admin CLI.
"""

from .sqlite_repository import SQLiteFleetRepository

__all__ = ["SQLiteFleetRepository"]
