"""Incremental transcript → DB sync engine.

Scans the transcript root for new or changed files (mtime-based), parses
them, and replaces the stored session, messages and tool usage. Fresh files
are handed to the live watcher.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from session_tracker import config
from session_tracker.date_utils import iso_to_epoch
from session_tracker.db.file_watcher import LiveFileWatcher
from session_tracker.db.repositories.sessions import (
    SqliteSessionRepository,
    row_to_detailed_usage,
    row_to_message,
    row_to_session,
)
from session_tracker.db.scanner import (
    classify_changes,
    find_session_files,
    project_name_for,
    session_id_for,
    session_kind_for,
)
from session_tracker.db.scheduler import ScanScheduler
from session_tracker.db.state import TrackingState
from session_tracker.models import (
    ParsedSession,
    RefreshResult,
    ScanResult,
    ScanStatusEvent,
    Session,
    SessionFile,
    SessionMessage,
    ToolUsageCount,
)
from session_tracker.notifications import NotificationSink, NullSink
from session_tracker.observability import (
    record_ingestion,
    record_parser_failure,
    record_token_cost,
    record_tool_result,
    start_span,
)
from session_tracker.parsers.transcript import parse_session_file
from session_tracker.pricing import PricingLookup, calculate_cost, load_pricing_table

logger = logging.getLogger("tracker.sync")

_PROCESSED = "processed"
_SKIPPED = "skipped"
_FAILED = "failed"


def needs_recovery(session_row: dict[str, Any]) -> bool:
    """A stored session with messages but zero tokens was ingested incompletely."""
    return int(session_row.get("token_count") or 0) == 0 and int(session_row.get("message_count") or 0) > 0


def build_session_payload(path: Path, mtime: float, parsed: ParsedSession, cost_usd: float) -> dict[str, Any]:
    stats = parsed.tokenStats
    return {
        "id": session_id_for(path),
        "projectName": project_name_for(path),
        "filePath": str(path),
        "sessionKind": session_kind_for(path),
        "startTime": parsed.startTime,
        "endTime": parsed.endTime,
        "messageCount": len(parsed.messages),
        "inputTokens": stats.inputTokens,
        "outputTokens": stats.outputTokens,
        "cacheWriteTokens": stats.cacheWriteTokens,
        "cacheReadTokens": stats.cacheReadTokens,
        "tokenCount": stats.total,
        "costUsd": cost_usd,
        "model": parsed.model,
        "fileModifiedTime": mtime,
    }


class SyncEngine:
    """Incremental mtime-based transcript → DB synchronization.

    Owns the shared ``TrackingState``; the live watcher and the scan
    scheduler receive it by reference.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        sink: NotificationSink | None = None,
        *,
        sessions_dir: Path | str | None = None,
        pricing: PricingLookup | None = None,
        batch_size: int | None = None,
        state: TrackingState | None = None,
        watcher: LiveFileWatcher | None = None,
        scan_interval: float | None = None,
        clock: Callable[[], float] = time.time,
        parse: Callable[[Path], ParsedSession] = parse_session_file,
    ):
        self.db = db
        self.session_repo = SqliteSessionRepository(db)
        self.sink = sink or NullSink()
        self.sessions_dir = Path(sessions_dir) if sessions_dir is not None else config.SESSIONS_DIR
        self.pricing = pricing or load_pricing_table()
        self.batch_size = max(1, batch_size or config.BATCH_SIZE)
        self.state = state or TrackingState()
        self.watcher = watcher or LiveFileWatcher(self.state, self.sink)
        self.scheduler = ScanScheduler(self.scan_for_new_sessions, interval=scan_interval)
        self._clock = clock
        self._parse = parse
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Operation tracking ──────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self._start_operation(kind, trigger, metadata or {})

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        """Return a single operation snapshot."""
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live scan/refresh observability payload for API status."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
                "knownFileCount": len(self.state.known_files),
                "watchedFileCount": len(self.state.watched),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        progress: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if progress:
                operation.setdefault("progress", {}).update(progress)
            operation["updatedAt"] = now

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Status events ───────────────────────────────────────────────

    def _emit_status(self, state: str, message: str = "", current: int = 0, total: int = 0) -> None:
        self.sink.scan_status(ScanStatusEvent(state=state, message=message, current=current, total=total))

    # ── Session Upsert Pipeline ─────────────────────────────────────

    def _resolve_cost(self, parsed: ParsedSession) -> float:
        if parsed.costUsd > 0:
            return parsed.costUsd
        return calculate_cost(parsed.tokenStats, parsed.model, as_of=parsed.startTime, pricing=self.pricing)

    async def process_session_file(self, path: Path | str, mtime: float | None = None, force: bool = False) -> bool:
        """Parse and upsert a single transcript. Returns True if it was actually reprocessed."""
        file_path = str(path)
        async with self.state.lock_for(file_path):
            if mtime is None:
                try:
                    mtime = os.stat(file_path).st_mtime
                except FileNotFoundError:
                    logger.debug("Transcript vanished before processing: %s", file_path)
                    return False

            if not force:
                existing = await self.session_repo.get_session_by_path(file_path)
                if existing and existing["file_mtime"] == mtime and not needs_recovery(existing):
                    return False  # unchanged

            source = Path(file_path)
            project = project_name_for(source)
            t0 = time.monotonic()
            with start_span("tracker.session.sync", {"session.path": file_path, "force": force}):
                parsed = await asyncio.to_thread(self._parse, source)
                payload = build_session_payload(source, mtime, parsed, self._resolve_cost(parsed))
                session_id = payload["id"]

                await self.session_repo.upsert_session(payload)
                await self.session_repo.replace_messages(
                    session_id, [message.model_dump() for message in parsed.messages]
                )
                await self.session_repo.replace_tool_usage_counts(session_id, parsed.toolUsage)
                await self.session_repo.replace_detailed_tool_usage(
                    session_id, [entry.model_dump() for entry in parsed.detailedToolUsage]
                )

            self.state.known_files.add(file_path)

        elapsed_ms = (time.monotonic() - t0) * 1000
        record_ingestion("session", "success", elapsed_ms, project=project)
        if parsed.linesSkipped:
            record_parser_failure("transcript", project=project)
        record_token_cost(
            project=project,
            model=parsed.model or "",
            token_input=parsed.tokenStats.inputTokens,
            token_output=parsed.tokenStats.outputTokens,
            cost_usd=payload["costUsd"],
        )
        for entry in parsed.detailedToolUsage:
            if not entry.isDuplicate:
                record_tool_result(entry.toolName, "success" if entry.success else "error", project=project)
        logger.debug(
            "Synced %s: %d messages, %d tokens in %dms",
            session_id, payload["messageCount"], payload["tokenCount"], int(elapsed_ms),
        )
        return True

    async def _process_guarded(self, session_file: SessionFile, force: bool = False) -> str:
        try:
            synced = await self.process_session_file(session_file.path, session_file.modifiedTime, force=force)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to process %s: %s", session_file.path, exc)
            record_ingestion("session", "error", 0.0, project=project_name_for(Path(session_file.path)))
            return _FAILED
        return _PROCESSED if synced else _SKIPPED

    async def _process_in_batches(
        self,
        files: list[SessionFile],
        *,
        force: bool = False,
        operation_id: str | None = None,
        report_progress: bool = False,
    ) -> list[str]:
        outcomes: list[str] = []
        total = len(files)
        for start in range(0, total, self.batch_size):
            batch = files[start : start + self.batch_size]
            outcomes.extend(await asyncio.gather(*(self._process_guarded(f, force) for f in batch)))
            if report_progress:
                self._emit_status("scanning", f"Processed {len(outcomes)} of {total} sessions", len(outcomes), total)
            await self._update_operation(operation_id, progress={"current": len(outcomes), "total": total})
        return outcomes

    def _is_fresh(self, session_file: SessionFile) -> bool:
        return self._clock() - session_file.modifiedTime < config.NEW_SESSION_THRESHOLD_SECONDS

    async def _announce_and_watch(self, session_file: SessionFile) -> None:
        path = Path(session_file.path)
        self.sink.session_detected(
            session_file.path,
            project_name_for(path),
            session_id_for(path),
            session_kind_for(path),
        )
        await self.watcher.watch(session_file.path, session_id_for(path))

    # ── Scans ───────────────────────────────────────────────────────

    async def scan_sessions(
        self,
        *,
        force: bool = False,
        trigger: str = "api",
        operation_id: str | None = None,
    ) -> ScanResult:
        """Process every transcript under the root in fixed-size batches."""
        if not operation_id:
            operation_id = await self._start_operation(
                "full_scan", trigger, {"force": force, "sessionsDir": str(self.sessions_dir)}
            )
        t0 = time.monotonic()

        if not self.sessions_dir.is_dir():
            logger.warning("Sessions directory %s does not exist", self.sessions_dir)
            self._emit_status("complete", "No sessions found")
            result = ScanResult(status="no_sessions")
            await self._finish_operation(operation_id, status="completed", stats=result.model_dump())
            return result

        try:
            files = await asyncio.to_thread(find_session_files, self.sessions_dir)
            total = len(files)
            self._emit_status("scanning", f"Found {total} sessions", 0, total)
            await self._update_operation(operation_id, phase="sessions", message=f"Processing {total} sessions")

            outcomes = await self._process_in_batches(
                files, force=force, operation_id=operation_id, report_progress=True
            )
            self.state.known_files.update(f.path for f in files)

            result = ScanResult(
                status="complete",
                total=total,
                processed=outcomes.count(_PROCESSED),
                skipped=outcomes.count(_SKIPPED),
                failed=outcomes.count(_FAILED),
                durationMs=int((time.monotonic() - t0) * 1000),
            )
            self._emit_status("complete", f"Processed {result.processed} of {total} sessions", total, total)
            await self._finish_operation(operation_id, status="completed", stats=result.model_dump())
            logger.info(
                "Scan complete: %d processed, %d skipped, %d failed in %dms",
                result.processed, result.skipped, result.failed, result.durationMs,
            )
            return result
        except Exception as exc:
            logger.exception("Session scan failed")
            self._emit_status("error", str(exc))
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            return ScanResult(status="error", durationMs=int((time.monotonic() - t0) * 1000))

    async def rescan_sessions(self, trigger: str = "api", operation_id: str | None = None) -> ScanResult:
        return await self.scan_sessions(trigger=trigger, operation_id=operation_id)

    async def init(self, *, start_scheduler: bool | None = None) -> ScanResult:
        """Initial scan, then live tracking of fresh files and periodic discovery."""
        if not self.sessions_dir.is_dir():
            logger.warning("Sessions directory %s does not exist, nothing to track", self.sessions_dir)
            self._emit_status("complete", "No sessions found")
            return ScanResult(status="no_sessions")

        result = await self.scan_sessions(trigger="startup")
        if result.status == "complete":
            for session_file in await asyncio.to_thread(find_session_files, self.sessions_dir):
                if not self._is_fresh(session_file):
                    break
                await self.watcher.watch(session_file.path, session_id_for(Path(session_file.path)))

        should_schedule = config.SCHEDULER_ENABLED if start_scheduler is None else start_scheduler
        if should_schedule:
            self.scheduler.start()
        return result

    async def refresh_sessions(self, trigger: str = "api") -> RefreshResult:
        """Process only new, modified and recoverable transcripts."""
        if not self.sessions_dir.is_dir():
            return RefreshResult()

        operation_id = await self._start_operation("refresh", trigger, {"sessionsDir": str(self.sessions_dir)})
        try:
            files = await asyncio.to_thread(find_session_files, self.sessions_dir)
            known = await self.session_repo.get_known_paths_with_mtime()
            changes = classify_changes(files, known)
            recovery_paths = await self.session_repo.list_recovery_candidate_paths()
            recoverable = [f for f in changes.unchanged if f.path in recovery_paths]

            new_outcomes = await self._process_in_batches(changes.new_files, operation_id=operation_id)
            modified_outcomes = await self._process_in_batches(changes.modified_files, operation_id=operation_id)
            recovered_outcomes = await self._process_in_batches(recoverable, operation_id=operation_id)
            self.state.known_files.update(f.path for f in files)

            for session_file, outcome in zip(changes.new_files, new_outcomes):
                if outcome == _PROCESSED and self._is_fresh(session_file):
                    await self._announce_and_watch(session_file)

            result = RefreshResult(
                newCount=new_outcomes.count(_PROCESSED),
                updatedCount=modified_outcomes.count(_PROCESSED),
                recoveredCount=recovered_outcomes.count(_PROCESSED),
            )
        except Exception as exc:
            logger.exception("Session refresh failed")
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            return RefreshResult()

        await self._finish_operation(operation_id, status="completed", stats=result.model_dump())
        return result

    async def scan_for_new_sessions(self) -> int:
        """Scheduler tick: sweep deleted files, then ingest transcripts not yet known."""
        self.watcher.sweep_deleted()
        if not self.sessions_dir.is_dir():
            return 0

        files = await asyncio.to_thread(find_session_files, self.sessions_dir)
        ingested = 0
        for session_file in files:
            if session_file.path in self.state.known_files:
                continue
            self.state.known_files.add(session_file.path)
            outcome = await self._process_guarded(session_file)
            if outcome == _FAILED:
                continue
            ingested += 1
            if self._is_fresh(session_file):
                await self._announce_and_watch(session_file)
        if ingested:
            logger.info("Discovered %d new transcripts", ingested)
        return ingested

    async def stop_watching(self) -> None:
        """Stop the scheduler and every live poller. Idempotent."""
        await self.scheduler.stop()
        await self.watcher.stop()

    # ── Session queries ─────────────────────────────────────────────

    async def get_all_sessions(
        self,
        project_name: str | None = None,
        favorite: bool | None = None,
        archived: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Session]:
        rows = await self.session_repo.list_all_sessions(
            project_name=project_name, favorite=favorite, archived=archived, limit=limit, offset=offset
        )
        return [row_to_session(row) for row in rows]

    async def get_session(self, session_id: str) -> Session | None:
        row = await self.session_repo.get_session(session_id)
        return row_to_session(row) if row else None

    async def watch_session(self, session_id: str) -> str | None:
        session = await self.get_session(session_id)
        if session is None or not os.path.exists(session.filePath):
            return None
        await self.watcher.watch(session.filePath, session.id)
        return session.filePath

    async def get_session_messages(self, session_id: str) -> list[SessionMessage]:
        """Stored messages; a session with none is parsed from disk and stored."""
        rows = await self.session_repo.get_messages(session_id)
        if rows:
            return [row_to_message(row) for row in rows]

        session = await self.get_session(session_id)
        if session is None or not os.path.exists(session.filePath):
            return []
        async with self.state.lock_for(session.filePath):
            parsed = await asyncio.to_thread(self._parse, Path(session.filePath))
            if parsed.messages:
                await self.session_repo.replace_messages(
                    session_id, [message.model_dump() for message in parsed.messages]
                )
        return parsed.messages

    async def get_live_sessions(self) -> list[Session]:
        threshold = self._clock() - config.LIVE_SESSION_THRESHOLD_SECONDS
        return [
            session
            for session in await self.get_all_sessions()
            if session.endTime and iso_to_epoch(session.endTime) > threshold
        ]

    async def is_session_live(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        try:
            mtime = os.stat(session.filePath).st_mtime
        except OSError as exc:
            logger.debug("Could not stat %s for live check: %s", session.filePath, exc)
            return False
        return self._clock() - mtime < config.LIVE_FILE_THRESHOLD_SECONDS

    async def get_session_raw_entries(self, session_id: str, after_index: int | None = None) -> list[Any]:
        """Decoded records starting at ``after_index`` among the non-blank lines."""
        session = await self.get_session(session_id)
        if session is None or not os.path.exists(session.filePath):
            return []
        try:
            text = await asyncio.to_thread(Path(session.filePath).read_text, encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.error("Failed to read raw entries for session %s: %s", session_id, exc)
            return []

        lines = [line for line in text.split("\n") if line.strip()]
        start = after_index if after_index is not None and after_index >= 0 else 0
        entries: list[Any] = []
        for index in range(start, len(lines)):
            try:
                entries.append(json.loads(lines[index]))
            except ValueError:
                logger.debug("Skipped malformed line %d in raw entries for %s", index, session_id)
        return entries

    async def get_tool_usage(self, session_id: str) -> dict[str, Any]:
        counts = await self.session_repo.get_tool_usage_counts(session_id)
        rows = await self.session_repo.get_detailed_tool_usage(session_id)
        return {
            "counts": [ToolUsageCount(name=name, count=count) for name, count in counts.items()],
            "detailed": [row_to_detailed_usage(row) for row in rows],
        }

    async def refresh_session_tokens(self, session_id: str) -> Session | None:
        """Force a reparse of one session and return the stored result."""
        session = await self.get_session(session_id)
        if session is None or not os.path.exists(session.filePath):
            return session
        try:
            await self.process_session_file(session.filePath, force=True)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to refresh session tokens for %s: %s", session_id, exc)
            return session
        return await self.get_session(session_id)

    async def recalculate_all_costs(self, trigger: str = "api") -> int:
        """Force a reparse of every stored session whose transcript still exists."""
        sessions = await self.get_all_sessions()
        operation_id = await self._start_operation("recalculate_costs", trigger, {"sessions": len(sessions)})
        logger.info("Starting cost recalculation for %d sessions", len(sessions))
        files: list[SessionFile] = []
        for s in sessions:
            try:
                mtime = os.stat(s.filePath).st_mtime
            except OSError:
                continue
            files.append(SessionFile(path=s.filePath, modifiedTime=mtime))
        outcomes = await self._process_in_batches(files, force=True, operation_id=operation_id)
        count = outcomes.count(_PROCESSED)
        await self._finish_operation(operation_id, status="completed", stats={"recalculated": count})
        logger.info("Completed cost recalculation for %d sessions", count)
        return count

    async def set_favorite(self, session_id: str, favorite: bool) -> Session | None:
        await self.session_repo.set_favorite(session_id, favorite)
        return await self.get_session(session_id)

    async def set_archived(self, session_id: str, archived: bool) -> Session | None:
        await self.session_repo.set_archived(session_id, archived)
        return await self.get_session(session_id)
