"""SQLite implementation of the session store."""
from __future__ import annotations

from typing import Any, Mapping

import aiosqlite

from session_tracker.date_utils import utc_now_iso
from session_tracker.models import DetailedToolUsage, Session, SessionMessage

_DETAIL_TABLES = ("messages", "session_tool_usage", "tool_usage_detailed")


def row_to_session(row: Mapping[str, Any]) -> Session:
    return Session(
        id=row["id"],
        projectName=row["project_name"] or "",
        filePath=row["file_path"] or "",
        sessionKind=row["session_kind"] or "user",
        startTime=row["start_time"],
        endTime=row["end_time"],
        messageCount=row["message_count"] or 0,
        inputTokens=row["input_tokens"] or 0,
        outputTokens=row["output_tokens"] or 0,
        cacheWriteTokens=row["cache_write_tokens"] or 0,
        cacheReadTokens=row["cache_read_tokens"] or 0,
        tokenCount=row["token_count"] or 0,
        costUsd=row["cost_usd"] or 0.0,
        model=row["model"],
        status=row["status"] or "active",
        favorite=bool(row["favorite"]),
        archived=bool(row["archived"]),
        fileModifiedTime=row["file_mtime"] or 0.0,
        updatedAt=row["updated_at"] or "",
    )


def row_to_message(row: Mapping[str, Any]) -> SessionMessage:
    return SessionMessage(
        role=row["role"],
        content=row["content"],
        timestamp=row["timestamp"],
        tokenCount=row["token_count"] or 0,
    )


def row_to_detailed_usage(row: Mapping[str, Any]) -> DetailedToolUsage:
    return DetailedToolUsage(
        toolName=row["tool_name"],
        toolUseId=row["tool_use_id"],
        toolInput=row["tool_input"],
        toolResultPreview=row["tool_result_preview"],
        success=bool(row["success"]),
        inputTokens=row["input_tokens"],
        outputTokens=row["output_tokens"],
        cacheWriteTokens=row["cache_write_tokens"],
        cacheReadTokens=row["cache_read_tokens"],
        tokenCost=row["token_cost"],
        costUsd=row["cost_usd"],
        messageId=row["message_id"],
        requestId=row["request_id"],
        entryHash=row["entry_hash"],
        toolIndex=row["tool_index"],
        model=row["model"],
        timestamp=row["timestamp"],
        isDuplicate=bool(row["is_duplicate"]),
    )


class SqliteSessionRepository:
    """SQLite-backed session storage with normalized detail tables.

    The engine owns the path, mtime and aggregate columns. ``status``,
    ``favorite`` and ``archived`` belong to UI collaborators and are never
    overwritten by an upsert.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_session(self, session_data: Mapping[str, Any]) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO sessions (
                id, project_name, file_path, session_kind,
                start_time, end_time, message_count,
                input_tokens, output_tokens, cache_write_tokens, cache_read_tokens,
                token_count, cost_usd, model, status, favorite, archived,
                file_mtime, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_name=excluded.project_name, file_path=excluded.file_path,
                session_kind=excluded.session_kind,
                start_time=excluded.start_time, end_time=excluded.end_time,
                message_count=excluded.message_count,
                input_tokens=excluded.input_tokens, output_tokens=excluded.output_tokens,
                cache_write_tokens=excluded.cache_write_tokens,
                cache_read_tokens=excluded.cache_read_tokens,
                token_count=excluded.token_count, cost_usd=excluded.cost_usd,
                model=excluded.model, file_mtime=excluded.file_mtime,
                updated_at=excluded.updated_at
            """,
            (
                session_data["id"],
                session_data.get("projectName", ""),
                session_data["filePath"],
                session_data.get("sessionKind", "user"),
                session_data.get("startTime"),
                session_data.get("endTime"),
                session_data.get("messageCount", 0),
                session_data.get("inputTokens", 0),
                session_data.get("outputTokens", 0),
                session_data.get("cacheWriteTokens", 0),
                session_data.get("cacheReadTokens", 0),
                session_data.get("tokenCount", 0),
                session_data.get("costUsd", 0.0),
                session_data.get("model"),
                session_data.get("status", "active"),
                int(bool(session_data.get("favorite", False))),
                int(bool(session_data.get("archived", False))),
                session_data.get("fileModifiedTime", 0.0),
                now, now,
            ),
        )
        await self.db.commit()

    async def get_session(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            return self._row_to_dict(row)

    async def get_session_by_path(self, file_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def get_known_paths_with_mtime(self) -> dict[str, float]:
        async with self.db.execute("SELECT file_path, file_mtime FROM sessions") as cur:
            rows = await cur.fetchall()
        return {row["file_path"]: row["file_mtime"] for row in rows}

    async def list_recovery_candidate_paths(self) -> set[str]:
        """Paths of sessions with messages but no recorded tokens."""
        async with self.db.execute(
            "SELECT file_path FROM sessions WHERE token_count = 0 AND message_count > 0"
        ) as cur:
            rows = await cur.fetchall()
        return {row["file_path"] for row in rows}

    def _filters(
        self,
        project_name: str | None,
        favorite: bool | None,
        archived: bool | None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if project_name:
            clauses.append("project_name = ?")
            params.append(project_name)
        if favorite is not None:
            clauses.append("favorite = ?")
            params.append(int(favorite))
        if archived is not None:
            clauses.append("archived = ?")
            params.append(int(archived))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_all_sessions(
        self,
        project_name: str | None = None,
        favorite: bool | None = None,
        archived: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict]:
        where, params = self._filters(project_name, favorite, archived)
        query = f"SELECT * FROM sessions{where} ORDER BY end_time IS NULL, end_time DESC, id"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, max(0, offset)])
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
            return [self._row_to_dict(r) for r in rows]

    async def count_sessions(
        self,
        project_name: str | None = None,
        favorite: bool | None = None,
        archived: bool | None = None,
    ) -> int:
        where, params = self._filters(project_name, favorite, archived)
        async with self.db.execute(f"SELECT COUNT(*) FROM sessions{where}", params) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def update_status(self, session_id: str, status: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
            (status, utc_now_iso(), session_id),
        )
        await self.db.commit()

    async def set_favorite(self, session_id: str, favorite: bool) -> None:
        await self.db.execute(
            "UPDATE sessions SET favorite = ?, updated_at = ? WHERE id = ?",
            (int(favorite), utc_now_iso(), session_id),
        )
        await self.db.commit()

    async def set_archived(self, session_id: str, archived: bool) -> None:
        await self.db.execute(
            "UPDATE sessions SET archived = ?, updated_at = ? WHERE id = ?",
            (int(archived), utc_now_iso(), session_id),
        )
        await self.db.commit()

    async def delete_session(self, session_id: str) -> None:
        for table in _DETAIL_TABLES:
            await self.db.execute(f"DELETE FROM {table} WHERE session_id = ?", (session_id,))
        await self.db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await self.db.commit()

    # ── Detail tables ───────────────────────────────────────────────

    async def replace_messages(self, session_id: str, messages: list[dict]) -> None:
        await self.db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        await self.db.executemany(
            """INSERT INTO messages
                (session_id, message_index, role, content, timestamp, token_count)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [
                (
                    session_id, i,
                    message.get("role", "unknown"),
                    message.get("content", ""),
                    message.get("timestamp"),
                    message.get("tokenCount", 0),
                )
                for i, message in enumerate(messages)
            ],
        )
        await self.db.commit()

    async def replace_tool_usage_counts(self, session_id: str, counts: Mapping[str, int]) -> None:
        await self.db.execute("DELETE FROM session_tool_usage WHERE session_id = ?", (session_id,))
        await self.db.executemany(
            "INSERT INTO session_tool_usage (session_id, tool_name, call_count) VALUES (?, ?, ?)",
            [(session_id, name, count) for name, count in counts.items()],
        )
        await self.db.commit()

    async def replace_detailed_tool_usage(self, session_id: str, entries: list[dict]) -> None:
        await self.db.execute("DELETE FROM tool_usage_detailed WHERE session_id = ?", (session_id,))
        await self.db.executemany(
            """INSERT INTO tool_usage_detailed
                (session_id, tool_name, tool_use_id, tool_input, tool_result_preview, success,
                 input_tokens, output_tokens, cache_write_tokens, cache_read_tokens,
                 token_cost, cost_usd, message_id, request_id, entry_hash, tool_index,
                 model, timestamp, is_duplicate)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    session_id,
                    e.get("toolName", ""),
                    e.get("toolUseId"),
                    e.get("toolInput"),
                    e.get("toolResultPreview"),
                    int(bool(e.get("success", True))),
                    e.get("inputTokens", 0),
                    e.get("outputTokens", 0),
                    e.get("cacheWriteTokens", 0),
                    e.get("cacheReadTokens", 0),
                    e.get("tokenCost", 0),
                    e.get("costUsd", 0.0),
                    e.get("messageId"),
                    e.get("requestId"),
                    e.get("entryHash", ""),
                    e.get("toolIndex", 0),
                    e.get("model"),
                    e.get("timestamp"),
                    int(bool(e.get("isDuplicate", False))),
                )
                for e in entries
            ],
        )
        await self.db.commit()

    async def get_messages(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY message_index",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_tool_usage_counts(self, session_id: str) -> dict[str, int]:
        async with self.db.execute(
            "SELECT tool_name, call_count FROM session_tool_usage WHERE session_id = ? ORDER BY call_count DESC, tool_name",
            (session_id,),
        ) as cur:
            return {r["tool_name"]: r["call_count"] for r in await cur.fetchall()}

    async def get_detailed_tool_usage(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM tool_usage_detailed WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    def _row_to_dict(self, row) -> dict:
        return dict(row)
