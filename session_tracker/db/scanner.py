"""Directory scanning and change classification for transcript files."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from session_tracker.models import SessionFile

logger = logging.getLogger("tracker.scanner")

TRANSCRIPT_SUFFIX = ".jsonl"
SUBAGENT_PREFIX = "agent-"


@dataclass
class ChangeSet:
    new_files: list[SessionFile] = field(default_factory=list)
    modified_files: list[SessionFile] = field(default_factory=list)
    unchanged: list[SessionFile] = field(default_factory=list)


def session_id_for(path: Path) -> str:
    return path.stem


def project_name_for(path: Path) -> str:
    return path.parent.name


def session_kind_for(path: Path) -> str:
    return "subagent" if path.stem.startswith(SUBAGENT_PREFIX) else "user"


def _walk_error(exc: OSError) -> None:
    logger.debug("Skipping unreadable directory %s: %s", getattr(exc, "filename", ""), exc)


def find_session_files(root: Path) -> list[SessionFile]:
    """Every transcript under ``root`` with its mtime, most recently modified first.

    A missing root yields an empty list. Entries that cannot be read or
    stat'ed are skipped.
    """
    if not root.is_dir():
        return []

    found: list[SessionFile] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_walk_error):
        for filename in filenames:
            if not filename.endswith(TRANSCRIPT_SUFFIX):
                continue
            path = os.path.join(dirpath, filename)
            try:
                mtime = os.stat(path).st_mtime
            except OSError as exc:
                logger.debug("Skipping unstatable file %s: %s", path, exc)
                continue
            found.append(SessionFile(path=path, modifiedTime=mtime))

    found.sort(key=lambda f: f.modifiedTime, reverse=True)
    return found


def classify_changes(files: list[SessionFile], known: Mapping[str, float]) -> ChangeSet:
    """Split a scan into new, modified and unchanged files against known mtimes."""
    changes = ChangeSet()
    for session_file in files:
        known_mtime = known.get(session_file.path)
        if known_mtime is None:
            changes.new_files.append(session_file)
        elif known_mtime != session_file.modifiedTime:
            changes.modified_files.append(session_file)
        else:
            changes.unchanged.append(session_file)
    return changes
