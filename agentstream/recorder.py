"""Append-only JSONL recording of completed blocks and their augments."""
from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Protocol

from agentstream.augments.models import Augment, CompletedBlock, augment_to_dict, block_to_dict

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


class BlockRecorder(Protocol):
    def record(self, session_id: str, block: CompletedBlock, augment: Augment | None) -> None:
        ...


def recording_path(directory: Path, session_id: str) -> Path:
    """``<directory>/<session_id>.blocks.jsonl`` with a filesystem-safe name."""
    safe = _UNSAFE_NAME_RE.sub("_", session_id) or "session"
    return directory / f"{safe}.blocks.jsonl"


class JsonlBlockRecorder:
    """Writes one JSON line per delivered block.

    Each line is written and fsynced in a single append so a crash leaves
    at most one truncated trailing line.
    """

    def __init__(self, directory: str | Path, *, fsync: bool = True) -> None:
        self.directory = Path(directory)
        self.fsync = fsync

    def path_for(self, session_id: str) -> Path:
        return recording_path(self.directory, session_id)

    def record(self, session_id: str, block: CompletedBlock, augment: Augment | None) -> None:
        path = self.path_for(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(
            {
                "ts": time.time(),
                "session_id": session_id,
                "block": block_to_dict(block),
                "augment": augment_to_dict(augment),
            },
            ensure_ascii=False,
        )
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        logger.debug("session=%s recorded block %s to %s", session_id, block.block_id, path)

    def read(self, session_id: str) -> list[dict]:
        """Recorded entries for a session; a truncated last line is skipped."""
        path = self.path_for(session_id)
        if not path.exists():
            return []
        entries = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable line in %s", path)
        return entries
