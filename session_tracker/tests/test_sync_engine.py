import asyncio
import json
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path

import aiosqlite

from session_tracker.date_utils import iso_to_epoch
from session_tracker.db.sqlite_migrations import run_migrations
from session_tracker.db.sync_engine import SyncEngine, needs_recovery
from session_tracker.models import ModelPricing
from session_tracker.parsers.transcript import parse_session_file


class _RecordingSink:
    def __init__(self) -> None:
        self.detected: list[tuple] = []
        self.updated: list[tuple] = []
        self.statuses: list = []

    def session_detected(self, path, project_name, session_id, session_kind):
        self.detected.append((path, project_name, session_id, session_kind))

    def session_updated(self, path, session_id, messages):
        self.updated.append((path, session_id, messages))

    def scan_status(self, event):
        self.statuses.append(event)


class _RecordingPricing:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def get_price(self, model, as_of=None):
        self.calls.append((model, as_of))
        return ModelPricing(inputRate=1.0, outputRate=1.0)


def _usage_record(message_id: str, input_tokens: int, output_tokens: int, **extra) -> dict:
    record = {
        "type": "assistant",
        "timestamp": "2026-02-16T10:00:00Z",
        "requestId": f"req-{message_id}",
        "message": {
            "id": message_id,
            "model": "claude-sonnet-4-5",
            "content": [{"type": "text", "text": f"reply {message_id}"}],
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": 2,
                "cache_read_input_tokens": 3,
            },
        },
    }
    record.update(extra)
    return record


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "projects"
        self.root.mkdir()
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sink = _RecordingSink()
        self.engines: list[SyncEngine] = []

    async def asyncTearDown(self) -> None:
        for engine in self.engines:
            await engine.stop_watching()
        await self.db.close()
        self._tmp.cleanup()

    def _engine(self, **kwargs) -> SyncEngine:
        kwargs.setdefault("sessions_dir", self.root)
        engine = SyncEngine(self.db, self.sink, **kwargs)
        self.engines.append(engine)
        return engine

    def _write(self, project: str, session_id: str, records: list, mtime: float | None = 1_000.0) -> Path:
        directory = self.root / project
        directory.mkdir(exist_ok=True)
        path = directory / f"{session_id}.jsonl"
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    async def test_second_refresh_without_changes_is_a_no_op(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 10, 5)])
        self._write("proj", "s2", [_usage_record("m2", 1, 1)])
        engine = self._engine()

        first = await engine.refresh_sessions()
        second = await engine.refresh_sessions()

        self.assertEqual((first.newCount, first.updatedCount), (2, 0))
        self.assertEqual((second.newCount, second.updatedCount, second.recoveredCount), (0, 0, 0))

    async def test_refresh_reports_modified_files(self) -> None:
        path = self._write("proj", "s1", [_usage_record("m1", 10, 5)])
        engine = self._engine()
        await engine.refresh_sessions()

        self._write("proj", "s1", [_usage_record("m1", 10, 5), _usage_record("m2", 20, 5)], mtime=2_000.0)
        result = await engine.refresh_sessions()

        self.assertEqual((result.newCount, result.updatedCount), (0, 1))
        session = await engine.get_session("s1")
        self.assertEqual(session.inputTokens, 30)
        self.assertEqual(session.fileModifiedTime, 2_000.0)
        self.assertEqual(session.filePath, str(path))

    async def test_refresh_store_failure_returns_empty_result(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 10, 5)])
        engine = self._engine()

        async def broken_known_paths():
            raise aiosqlite.OperationalError("database is locked")

        engine.session_repo.get_known_paths_with_mtime = broken_known_paths
        result = await engine.refresh_sessions()

        self.assertEqual((result.newCount, result.updatedCount, result.recoveredCount), (0, 0, 0))
        operations = await engine.list_operations()
        self.assertEqual(operations[0]["kind"], "refresh")
        self.assertEqual(operations[0]["status"], "failed")
        self.assertIn("database is locked", operations[0]["error"])

    async def test_concurrent_scan_and_refresh_parse_each_file_once(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 10, 5)])
        guard = threading.Lock()
        calls = {"total": 0, "active": 0, "peak": 0}

        def counting_parse(path: Path):
            with guard:
                calls["total"] += 1
                calls["active"] += 1
                calls["peak"] = max(calls["peak"], calls["active"])
            try:
                time.sleep(0.05)
                return parse_session_file(path)
            finally:
                with guard:
                    calls["active"] -= 1

        engine = self._engine(parse=counting_parse)
        scan, refresh = await asyncio.gather(engine.scan_sessions(), engine.refresh_sessions())

        self.assertEqual(calls["total"], 1)
        self.assertEqual(calls["peak"], 1)
        self.assertEqual(scan.processed + refresh.newCount, 1)
        self.assertEqual((await engine.get_session("s1")).inputTokens, 10)

    async def test_zero_token_session_with_messages_is_recovered(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 10, 5)])
        engine = self._engine()
        await engine.refresh_sessions()
        await self.db.execute("UPDATE sessions SET token_count = 0, message_count = 5 WHERE id = 's1'")
        await self.db.commit()
        self.assertTrue(needs_recovery(await engine.session_repo.get_session("s1")))

        result = await engine.refresh_sessions()

        self.assertEqual((result.newCount, result.updatedCount, result.recoveredCount), (0, 0, 1))
        session = await engine.get_session("s1")
        self.assertEqual(session.tokenCount, 20)
        self.assertEqual(session.messageCount, 1)
        self.assertEqual((await engine.refresh_sessions()).recoveredCount, 0)

    async def test_token_count_is_sum_of_components(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 10, 5), _usage_record("m1", 10, 5), _usage_record("m2", 7, 1)])
        engine = self._engine()
        result = await engine.scan_sessions()

        self.assertEqual(result.status, "complete")
        session = await engine.get_session("s1")
        self.assertEqual(session.inputTokens, 17)
        self.assertEqual(session.outputTokens, 6)
        self.assertEqual(session.cacheWriteTokens, 4)
        self.assertEqual(session.cacheReadTokens, 6)
        self.assertEqual(
            session.tokenCount,
            session.inputTokens + session.outputTokens + session.cacheWriteTokens + session.cacheReadTokens,
        )

    async def test_failing_file_does_not_stop_its_batch(self) -> None:
        for name in ("a", "bad", "c"):
            self._write("proj", name, [_usage_record(f"m-{name}", 1, 1)])

        def parse(path: Path):
            if path.stem == "bad":
                raise RuntimeError("boom")
            return parse_session_file(path)

        engine = self._engine(batch_size=2, parse=parse)
        result = await engine.scan_sessions()

        self.assertEqual((result.total, result.processed, result.failed), (3, 2, 1))
        self.assertIsNotNone(await engine.get_session("a"))
        self.assertIsNone(await engine.get_session("bad"))
        self.assertIsNotNone(await engine.get_session("c"))
        self.assertEqual(self.sink.statuses[-1].state, "complete")

    async def test_unchanged_files_are_skipped_on_rescan(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 1, 1)])
        engine = self._engine()
        await engine.scan_sessions()
        result = await engine.rescan_sessions()
        self.assertEqual((result.processed, result.skipped), (0, 1))

    async def test_explicit_cost_wins_over_pricing(self) -> None:
        pricing = _RecordingPricing()
        self._write("proj", "s1", [_usage_record("m1", 1_000_000, 0, costUSD=0.42)])
        engine = self._engine(pricing=pricing)
        await engine.scan_sessions()

        session = await engine.get_session("s1")
        self.assertAlmostEqual(session.costUsd, 0.42)
        self.assertEqual(pricing.calls, [])

    async def test_pricing_receives_session_start_time(self) -> None:
        pricing = _RecordingPricing()
        first = _usage_record("m1", 1_000_000, 0, timestamp="2025-03-01T08:00:00Z")
        later = _usage_record("m2", 0, 0, timestamp="2025-03-01T09:00:00Z")
        self._write("proj", "s1", [later, first])
        engine = self._engine(pricing=pricing)
        await engine.scan_sessions()

        self.assertEqual(pricing.calls, [("claude-sonnet-4-5", "2025-03-01T08:00:00Z")])
        session = await engine.get_session("s1")
        self.assertGreater(session.costUsd, 1.0)

    async def test_missing_root_reports_no_sessions(self) -> None:
        engine = self._engine(sessions_dir=Path(self._tmp.name) / "absent")
        result = await engine.init(start_scheduler=False)

        self.assertEqual(result.status, "no_sessions")
        self.assertEqual(len(self.sink.statuses), 1)
        self.assertEqual(self.sink.statuses[0].state, "complete")
        self.assertEqual(self.sink.statuses[0].message, "No sessions found")
        self.assertEqual((await engine.refresh_sessions()).newCount, 0)
        self.assertFalse(engine.scheduler.is_running)

    async def test_init_watches_only_fresh_files(self) -> None:
        old = self._write("proj", "old", [_usage_record("m1", 1, 1)])
        fresh = self._write("proj", "fresh", [_usage_record("m2", 1, 1)], mtime=None)
        engine = self._engine()

        result = await engine.init(start_scheduler=False)

        self.assertEqual(result.processed, 2)
        self.assertTrue(engine.watcher.is_watching(str(fresh)))
        self.assertFalse(engine.watcher.is_watching(str(old)))

    async def test_discovery_ingests_announces_and_watches_new_files(self) -> None:
        self._write("proj", "old", [_usage_record("m1", 1, 1)])
        engine = self._engine()
        await engine.init(start_scheduler=False)

        path = self._write("proj", "agent-42", [_usage_record("m2", 3, 4)], mtime=None)
        ingested = await engine.scan_for_new_sessions()

        self.assertEqual(ingested, 1)
        self.assertEqual(self.sink.detected, [(str(path), "proj", "agent-42", "subagent")])
        self.assertTrue(engine.watcher.is_watching(str(path)))
        self.assertEqual((await engine.get_session("agent-42")).sessionKind, "subagent")
        self.assertEqual(await engine.scan_for_new_sessions(), 0)

        await engine.stop_watching()
        await engine.stop_watching()
        self.assertEqual(engine.watcher.watched_paths, [])

    async def test_deleted_watched_file_is_forgotten(self) -> None:
        path = self._write("proj", "s1", [_usage_record("m1", 1, 1)])
        engine = self._engine()
        await engine.scan_sessions()
        self.assertEqual(await engine.watch_session("s1"), str(path))

        path.unlink()
        await engine.scan_for_new_sessions()

        self.assertFalse(engine.watcher.is_watching(str(path)))
        self.assertNotIn(str(path), engine.state.known_files)
        self.assertIsNone(await engine.watch_session("s1"))

    async def test_raw_entries_skip_blank_and_malformed_lines(self) -> None:
        separated = json.dumps({"n": 2, "text": "a\u2028b"}, ensure_ascii=False)
        self._write("proj", "s1", [{"n": 0}, "", "{broken", {"n": 1}, separated])
        engine = self._engine()
        await engine.scan_sessions()

        self.assertEqual(
            await engine.get_session_raw_entries("s1"),
            [{"n": 0}, {"n": 1}, {"n": 2, "text": "a\u2028b"}],
        )
        self.assertEqual(await engine.get_session_raw_entries("s1", after_index=2), [{"n": 1}, {"n": 2, "text": "a\u2028b"}])
        self.assertEqual(len(await engine.get_session_raw_entries("s1", after_index=-3)), 3)
        self.assertEqual(await engine.get_session_raw_entries("missing"), [])

    async def test_live_checks_use_file_mtime_and_end_time(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 1, 1)], mtime=5_000.0)
        now = {"value": 5_010.0}
        engine = self._engine(clock=lambda: now["value"])
        await engine.scan_sessions()

        self.assertTrue(await engine.is_session_live("s1"))
        now["value"] = 5_100.0
        self.assertFalse(await engine.is_session_live("s1"))
        self.assertFalse(await engine.is_session_live("missing"))

        end_epoch = iso_to_epoch("2026-02-16T10:00:00Z")
        now["value"] = end_epoch + 60
        self.assertEqual([s.id for s in await engine.get_live_sessions()], ["s1"])
        now["value"] = end_epoch + 600
        self.assertEqual(await engine.get_live_sessions(), [])

    async def test_messages_fall_back_to_parsing_the_file(self) -> None:
        path = self._write("proj", "s1", [_usage_record("m1", 1, 1)])
        engine = self._engine()
        await engine.session_repo.upsert_session({"id": "s1", "filePath": str(path), "fileModifiedTime": 1_000.0})

        messages = await engine.get_session_messages("s1")

        self.assertEqual([m.content for m in messages], ["reply m1"])
        self.assertEqual(len(await engine.session_repo.get_messages("s1")), 1)

    async def test_forced_reparse_operations(self) -> None:
        self._write("proj", "s1", [_usage_record("m1", 1, 1)])
        self._write("proj", "s2", [_usage_record("m2", 1, 1)])
        engine = self._engine()
        await engine.scan_sessions()
        await self.db.execute("UPDATE sessions SET cost_usd = 0 WHERE id = 's1'")
        await self.db.commit()

        refreshed = await engine.refresh_session_tokens("s1")
        self.assertGreater(refreshed.costUsd, 0)
        self.assertIsNone(await engine.refresh_session_tokens("missing"))
        self.assertEqual(await engine.recalculate_all_costs(), 2)

        (self.root / "proj" / "s2.jsonl").unlink()
        self.assertEqual(await engine.recalculate_all_costs(), 1)

        operations = await engine.list_operations()
        self.assertEqual(operations[0]["kind"], "recalculate_costs")
        self.assertEqual(operations[0]["status"], "completed")

    async def test_tool_usage_is_stored(self) -> None:
        record = _usage_record("m1", 1, 1)
        record["message"]["content"].append({"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "git status"}})
        self._write("proj", "s1", [record, {"type": "tool_result", "tool_use_id": "t1", "content": "clean"}])
        engine = self._engine()
        await engine.scan_sessions()

        usage = await engine.get_tool_usage("s1")
        self.assertEqual([(c.name, c.count) for c in usage["counts"]], [("git", 1)])
        detailed = usage["detailed"][0]
        self.assertEqual(detailed.toolName, "Bash")
        self.assertEqual(detailed.toolResultPreview, "clean")
        self.assertTrue(detailed.success)
        self.assertFalse(detailed.isDuplicate)

    async def test_status_events_report_progress(self) -> None:
        for name in ("a", "b", "c"):
            self._write("proj", name, [_usage_record(f"m-{name}", 1, 1)])
        engine = self._engine(batch_size=2)
        await engine.scan_sessions()

        states = [(e.state, e.current, e.total) for e in self.sink.statuses]
        self.assertEqual(states[0], ("scanning", 0, 3))
        self.assertIn(("scanning", 2, 3), states)
        self.assertEqual(states[-1], ("complete", 3, 3))


if __name__ == "__main__":
    unittest.main()
