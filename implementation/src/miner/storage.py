"""Key -> string storage backends.

Contract: a set() followed by get() of the same key returns the same text.
No transactions across keys.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Optional, Protocol

from miner.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def namespaced(key: str, user_id: Optional[str] = None) -> str:
    """Per-user storage key; no user id means the shared anonymous namespace."""
    if user_id is None or str(user_id) == "":
        return key
    return f"{key}_{user_id}"


class Storage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self.data


class FileStorage:
    """One UTF-8 file per key under `root`, written atomically (tmp + rename)."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{_UNSAFE.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"could not read {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(value, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"could not write {path}: {e}") from e

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"could not delete {path}: {e}") from e
