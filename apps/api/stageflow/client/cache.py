from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol


logger = logging.getLogger("stageflow.client.cache")


class LocalCache(Protocol):
    def load_snapshot(self) -> list[dict[str, Any]]: ...

    def save_snapshot(self, records: list[dict[str, Any]]) -> None: ...


class InMemoryCache:
    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self._records = json.loads(json.dumps(records or []))
        self.saves = 0

    def load_snapshot(self) -> list[dict[str, Any]]:
        return json.loads(json.dumps(self._records))

    def save_snapshot(self, records: list[dict[str, Any]]) -> None:
        self._records = json.loads(json.dumps(records))
        self.saves += 1


class JsonFileCache:
    """Device-local snapshot file, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                return []
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("client_cache.corrupt", extra={"path": str(self.path)})
                return []
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def save_snapshot(self, records: list[dict[str, Any]]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(records, default=str), encoding="utf-8")
            os.replace(tmp_path, self.path)
