"""Database schema creation and versioning.

All CREATE TABLE statements for the session store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("tracker.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    project_name        TEXT NOT NULL DEFAULT '',
    file_path           TEXT NOT NULL,
    session_kind        TEXT NOT NULL DEFAULT 'user',
    start_time          TEXT,
    end_time            TEXT,
    message_count       INTEGER NOT NULL DEFAULT 0,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    token_count         INTEGER NOT NULL DEFAULT 0,
    cost_usd            REAL NOT NULL DEFAULT 0,
    model               TEXT,
    status              TEXT NOT NULL DEFAULT 'active',
    favorite            INTEGER NOT NULL DEFAULT 0,
    archived            INTEGER NOT NULL DEFAULT 0,
    file_mtime          REAL NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_path   ON sessions(file_path);
CREATE INDEX IF NOT EXISTS idx_sessions_end    ON sessions(end_time DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_name, end_time DESC);

-- ── 2. Messages (replaced wholesale on every reparse) ──────────────
CREATE TABLE IF NOT EXISTS messages (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id    TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    message_index INTEGER NOT NULL,
    role          TEXT NOT NULL,
    content       TEXT NOT NULL,
    timestamp     TEXT,
    token_count   INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, message_index);

-- ── 3. Tool usage counts ───────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_tool_usage (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    tool_name   TEXT NOT NULL,
    call_count  INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_tool_usage_session ON session_tool_usage(session_id);

-- ── 4. Detailed tool usage ─────────────────────────────────────────
CREATE TABLE IF NOT EXISTS tool_usage_detailed (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    tool_name           TEXT NOT NULL,
    tool_use_id         TEXT,
    tool_input          TEXT,
    tool_result_preview TEXT,
    success             INTEGER NOT NULL DEFAULT 1,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    token_cost          INTEGER NOT NULL DEFAULT 0,
    cost_usd            REAL NOT NULL DEFAULT 0,
    message_id          TEXT,
    request_id          TEXT,
    entry_hash          TEXT NOT NULL,
    tool_index          INTEGER NOT NULL DEFAULT 0,
    model               TEXT,
    timestamp           TEXT
);

CREATE INDEX IF NOT EXISTS idx_tool_detailed_session ON tool_usage_detailed(session_id);
CREATE INDEX IF NOT EXISTS idx_tool_detailed_hash    ON tool_usage_detailed(session_id, entry_hash);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s -> %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # Version 1 stores predate duplicate flagging.
    await _ensure_column(db, "tool_usage_detailed", "is_duplicate", "INTEGER NOT NULL DEFAULT 0")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
