import os
import tempfile
import unittest
from pathlib import Path

from session_tracker.db.scanner import (
    classify_changes,
    find_session_files,
    project_name_for,
    session_id_for,
    session_kind_for,
)
from session_tracker.models import SessionFile


class ClassifyChangesTests(unittest.TestCase):
    def test_splits_new_modified_and_unchanged(self) -> None:
        known = {"A": 10.0, "B": 20.0}
        scanned = [
            SessionFile(path="A", modifiedTime=10.0),
            SessionFile(path="B", modifiedTime=25.0),
            SessionFile(path="C", modifiedTime=5.0),
        ]
        changes = classify_changes(scanned, known)
        self.assertEqual([f.path for f in changes.new_files], ["C"])
        self.assertEqual([f.path for f in changes.modified_files], ["B"])
        self.assertEqual([f.path for f in changes.unchanged], ["A"])

    def test_empty_known_map_marks_everything_new(self) -> None:
        changes = classify_changes([SessionFile(path="A", modifiedTime=1.0)], {})
        self.assertEqual(len(changes.new_files), 1)
        self.assertEqual(changes.modified_files, [])


class FindSessionFilesTests(unittest.TestCase):
    def test_missing_root_yields_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(find_session_files(Path(tmp) / "absent"), [])

    def test_recursive_scan_sorted_by_recency(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "proj-a").mkdir()
            (root / "proj-b" / "nested").mkdir(parents=True)
            old = root / "proj-a" / "old.jsonl"
            new = root / "proj-b" / "nested" / "new.jsonl"
            ignored = root / "proj-a" / "notes.txt"
            for path in (old, new, ignored):
                path.write_text("{}\n", encoding="utf-8")
            os.utime(old, (1_000, 1_000))
            os.utime(new, (2_000, 2_000))

            found = find_session_files(root)

        self.assertEqual([Path(f.path).name for f in found], ["new.jsonl", "old.jsonl"])
        self.assertEqual(found[0].modifiedTime, 2_000)


class PathConventionTests(unittest.TestCase):
    def test_identity_from_path(self) -> None:
        path = Path("/root/-home-dev-app/5f1c.jsonl")
        self.assertEqual(session_id_for(path), "5f1c")
        self.assertEqual(project_name_for(path), "-home-dev-app")
        self.assertEqual(session_kind_for(path), "user")
        self.assertEqual(session_kind_for(Path("/root/p/agent-1234.jsonl")), "subagent")


if __name__ == "__main__":
    unittest.main()
