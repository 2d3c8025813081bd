"""
Local string-keyed cache storage.

A small localStorage-style interface: values are strings (usually JSON
blobs) that are always read and written whole.
"""

import os
import json
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class LocalCache(ABC):
    """String-keyed, device-local storage"""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored value or None"""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one"""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a value (no error if absent)"""


class MemoryCache(LocalCache):
    """Process-lifetime cache"""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileCache(LocalCache):
    """
    Cache persisted as a single JSON object on disk.

    Every write rewrites the file through a temporary file and an atomic
    rename, so a crash never leaves a half-written cache behind.
    """

    def __init__(self, path: str = "client_data/cache.json"):
        """
        Args:
            path: Location of the JSON file
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _save(self, items: Dict[str, str]):
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            del items[key]
            self._save(items)
