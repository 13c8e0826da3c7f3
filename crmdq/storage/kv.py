"""Key-value blob stores backing rules, actions, failures and scan history."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog

LOGGER = structlog.get_logger(__name__)

_UNSAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """Synchronous string blob store addressed by key."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryStore:
    """Process-local store, used by tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileStore:
    """One file per key under ``root``.

    I/O errors never propagate: reads degrade to ``None`` and writes to a
    logged no-op, so an unavailable disk behaves like an empty store.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path_for(self, key: str) -> Path:
        return self._root / f"{_UNSAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("store_read_failed", key=key, path=str(path), error=str(exc))
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            LOGGER.warning("store_write_failed", key=key, path=str(path), error=str(exc))

    def remove(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("store_remove_failed", key=key, path=str(path), error=str(exc))
