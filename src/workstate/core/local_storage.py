"""Synchronous local storage.

A single flat namespace of string values that is read and written without
suspending, used when no async native store is available. Stores are
emulated on top of it by prefixing every key with the store name.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from .logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class SyncStorage(Protocol):
    """Synchronous key-value interface (``get_item``/``set_item``/``remove_item``)."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryLocalStorage:
    """Process-local storage; nothing survives a restart."""

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(data or {})

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


class FileLocalStorage:
    """Local storage persisted to one JSON file.

    The file is read on first access and rewritten atomically on every
    mutation, so a value is durable as soon as ``set_item`` returns. A
    corrupt file is logged and treated as empty.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        data: dict[str, str] = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except (OSError, ValueError) as exc:
                logger.warning(
                    "Local storage file unreadable, starting empty",
                    extra={"path": str(self.path), "error": str(exc)},
                )
            else:
                if isinstance(raw, dict):
                    data = {str(k): v for k, v in raw.items() if isinstance(v, str)}
                else:
                    logger.warning("Local storage file is not an object, starting empty", extra={"path": str(self.path)})
        self._data = data
        return data

    def _save(self) -> None:
        data = self._load()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(self.path)

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._save()

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save()

    def keys(self) -> list[str]:
        return list(self._load())

    def __len__(self) -> int:
        return len(self._load())


class PrefixedLocalStorage:
    """Namespacing adapter: physical key is ``"<prefix>:<key>"`` in the base storage."""

    def __init__(self, base: SyncStorage, prefix: str) -> None:
        self.base = base
        self.prefix = prefix
        self._head = f"{prefix}:"

    def physical_key(self, key: str) -> str:
        return self._head + key

    def get_item(self, key: str) -> str | None:
        return self.base.get_item(self._head + key)

    def set_item(self, key: str, value: str) -> None:
        self.base.set_item(self._head + key, value)

    def remove_item(self, key: str) -> None:
        self.base.remove_item(self._head + key)
