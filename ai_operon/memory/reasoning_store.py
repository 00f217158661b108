#!/usr/bin/env python3
"""
Reasoning Store
Durable storage for the reasoning trace of a task (thought before each step,
reflection after it).
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ai_operon.core.config import config
from ai_operon.orchestration.plan import ReasoningEntry

logger = logging.getLogger(__name__)


class ReasoningStore(ABC):
    """Where reasoning traces are persisted"""

    @abstractmethod
    async def save(self, user_id: str, session_id: str, entries: Sequence[ReasoningEntry]) -> None:
        """Persist the full trace so far, replacing any earlier copy"""

    @abstractmethod
    async def load(self, user_id: str, session_id: str) -> List[Dict[str, Any]]:
        """Return the stored trace, empty if none"""


def _safe(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", str(name)) or "default"


class JsonlReasoningStore(ReasoningStore):
    """
    One JSON-lines file per user and session:
    <base_dir>/<user>/<session>.jsonl
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or config.get("memory.reasoning_dir", "./.runtime/reasoning"))
        self._locks: Dict[Path, asyncio.Lock] = {}

    def path_for(self, user_id: str, session_id: str) -> Path:
        return self.base_dir / _safe(user_id) / f"{_safe(session_id)}.jsonl"

    def _write(self, path: Path, entries: List[Dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for entry in entries:
                    f.write(json.dumps(entry, default=str) + "\n")
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _read(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt reasoning entry in %s", path)
        return entries

    async def save(self, user_id: str, session_id: str, entries: Sequence[ReasoningEntry]) -> None:
        path = self.path_for(user_id, session_id)
        records = [entry.to_dict() for entry in entries]
        lock = self._locks.setdefault(path, asyncio.Lock())
        async with lock:
            await asyncio.to_thread(self._write, path, records)
        logger.debug("Saved %d reasoning entries to %s", len(entries), path)

    async def load(self, user_id: str, session_id: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, self.path_for(user_id, session_id))
