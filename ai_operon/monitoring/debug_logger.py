"""
Debug Logger
Appends raw model traffic (prompts and responses) to a JSON-lines dump when
logging.debug_dump is enabled. The dump sits next to the main log file.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ai_operon.core.config import config

DUMP_FILENAME = "debug_interactions.jsonl"


class InteractionDump:
    """One dump file, safe to share between tasks and worker threads"""

    _instance: Optional['InteractionDump'] = None

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @classmethod
    def shared(cls) -> 'InteractionDump':
        """Dump for the configured log directory; follows config reloads"""
        log_file = config.get("logging.file") or "./.runtime/logs/operon.log"
        path = Path(log_file).parent / DUMP_FILENAME
        if cls._instance is None or cls._instance.path != path:
            cls._instance = cls(str(path))
        return cls._instance

    def record(self, source: str, content: Any, kind: str = "info") -> None:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "source": source,
            "kind": kind,
            "content": content,
        }
        line = json.dumps(entry, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


def log_debug(source: str, content: Any, kind: str = "info") -> None:
    """Record one interaction; a no-op unless logging.debug_dump is set"""
    if not config.get("logging.debug_dump", False):
        return
    InteractionDump.shared().record(source, content, kind)
