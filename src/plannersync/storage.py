"""
Local Store -- the planner's persistent key/value storage.

Mirrors browser localStorage: flat string keys, string values.
Everything lives in one JSON document so a snapshot of the watched
keys is a single read.

Storage layout:
    ~/.plannersync/
    ├── storage.json     # {"tasks": "[...]", "habits": "[...]", ...}
    └── config.yaml      # SyncSettings
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("plannersync.storage")

STORAGE_FILENAME = "storage.json"


class LocalStore:
    """Thread-safe string key/value store backed by a JSON file.

    Args:
        path: The JSON file holding every key.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    @classmethod
    def in_home(cls, home: Path) -> "LocalStore":
        """Open the store that lives inside a sync home directory."""
        return cls(Path(home).expanduser() / STORAGE_FILENAME)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable local store %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Local store %s is not a JSON object, ignoring", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        tmp_path.replace(self.path)

    def get_item(self, key: str) -> Optional[str]:
        """Return the raw value for ``key``, or None when absent."""
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove_item(self, key: str) -> None:
        """Delete ``key``. Missing keys are ignored."""
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._read())

    def snapshot(self, keys: Iterable[str]) -> str:
        """Serialize the listed keys into one comparable string.

        Absent keys serialize as null so that deleting a key is a change.

        Args:
            keys: Keys to include, in a fixed order.

        Returns:
            JSON text; equal text means equal watched state.
        """
        with self._lock:
            data = self._read()
        return json.dumps(
            [[key, data.get(key)] for key in keys], ensure_ascii=False
        )

    def read_json(self, key: str, default):
        """Parse the JSON value stored under ``key``.

        Missing or corrupt values fall back to ``default``.
        """
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Key %s holds invalid JSON, using default", key)
            return default

    def write_json(self, key: str, value) -> None:
        """Serialize ``value`` as JSON under ``key``."""
        self.set_item(key, json.dumps(value, ensure_ascii=False))
