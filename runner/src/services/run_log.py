"""
Append-only run log.

One JSON object per line, one line per finished run. Appends from
concurrent runs are serialized by a lock shared by all users of the same
``RunLog`` instance.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List

class RunLog:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock, open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
