"""Database connection factory.

Provides a singleton async connection to SQLite with WAL mode.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from session_tracker import config

logger = logging.getLogger("tracker.db")

_connection: aiosqlite.Connection | None = None


async def open_connection(db_path: Path | str) -> aiosqlite.Connection:
    """Open a configured connection. ``":memory:"`` is accepted for tests."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    _connection = await open_connection(config.DB_PATH)
    logger.info("Database connection established: %s", config.DB_PATH)
    return _connection


def is_connected() -> bool:
    return _connection is not None


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
