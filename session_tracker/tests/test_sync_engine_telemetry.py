import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from session_tracker.db import sync_engine as sync_module
from session_tracker.db.sqlite_migrations import run_migrations
from session_tracker.db.sync_engine import SyncEngine, build_session_payload
from session_tracker.models import ParsedSession, TokenStats


def _unreadable(path: Path) -> ParsedSession:
    raise RuntimeError("unreadable")


class BuildSessionPayloadTests(unittest.TestCase):
    def test_payload_derives_identity_from_path(self) -> None:
        parsed = ParsedSession(
            tokenStats=TokenStats(inputTokens=1, outputTokens=2, cacheWriteTokens=3, cacheReadTokens=4),
            model="claude-opus-4-5",
            startTime="2026-02-22T10:00:00Z",
        )
        payload = build_session_payload(Path("/root/-work-app/agent-7.jsonl"), 12.5, parsed, 0.3)

        self.assertEqual(payload["id"], "agent-7")
        self.assertEqual(payload["projectName"], "-work-app")
        self.assertEqual(payload["sessionKind"], "subagent")
        self.assertEqual(payload["tokenCount"], 10)
        self.assertEqual(payload["fileModifiedTime"], 12.5)
        self.assertNotIn("status", payload)


class SyncEngineTelemetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        (self.root / "proj").mkdir()
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    async def test_processing_records_metrics(self) -> None:
        lines = [
            json.dumps({
                "type": "assistant",
                "message": {
                    "id": "m1",
                    "model": "claude-haiku-4-5",
                    "content": [{"type": "tool_use", "id": "t1", "name": "Read", "input": {}}],
                    "usage": {"input_tokens": 40, "output_tokens": 2},
                },
            }),
            "not json",
            json.dumps({"type": "tool_result", "tool_use_id": "t1", "content": "boom", "is_error": True}),
        ]
        path = self.root / "proj" / "s1.jsonl"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        engine = SyncEngine(self.db, sessions_dir=self.root)

        with patch.object(sync_module, "record_ingestion") as ingestion, \
                patch.object(sync_module, "record_parser_failure") as parser_failure, \
                patch.object(sync_module, "record_token_cost") as token_cost, \
                patch.object(sync_module, "record_tool_result") as tool_result:
            self.assertTrue(await engine.process_session_file(path))

        self.assertEqual(ingestion.call_args.args[:2], ("session", "success"))
        self.assertEqual(ingestion.call_args.kwargs["project"], "proj")
        parser_failure.assert_called_once_with("transcript", project="proj")
        self.assertEqual(token_cost.call_args.kwargs["token_input"], 40)
        self.assertEqual(token_cost.call_args.kwargs["model"], "claude-haiku-4-5")
        tool_result.assert_called_once_with("Read", "error", project="proj")

    async def test_failed_file_records_error(self) -> None:
        engine = SyncEngine(
            self.db,
            sessions_dir=self.root,
            parse=_unreadable,
        )
        path = self.root / "proj" / "s2.jsonl"
        path.write_text("{}\n", encoding="utf-8")

        with patch.object(sync_module, "record_ingestion") as ingestion:
            result = await engine.scan_sessions()

        self.assertEqual(result.failed, 1)
        self.assertEqual(ingestion.call_args.args[:2], ("session", "error"))


if __name__ == "__main__":
    unittest.main()
