"""Scope resolution: where a persisted value lives.

Global values live in one shared store. Workspace and session values for
the same directory share one store per workspace, and are kept apart by
their key prefix (``workspace:`` / ``session:<id>:``).
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..core.config import get_settings_instance

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class PersistTarget:
    """One physical slot: ``key`` inside ``storage`` (None = default store)."""

    key: str
    storage: str | None = None
    legacy: tuple[str, ...] = ()
    migrate: Callable[[Any], Any] | None = None

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("PersistTarget key cannot be empty")
        # Accept any iterable of legacy names
        object.__setattr__(self, "legacy", tuple(self.legacy or ()))


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def checksum(text: str) -> str | None:
    """32-bit FNV-1a of ``text`` (UTF-16 code units) in base 36; None for ""."""
    if not text:
        return None
    data = text.encode("utf-16-le")
    value = _FNV_OFFSET
    for i in range(0, len(data), 2):
        value ^= data[i] | (data[i + 1] << 8)
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return _base36(value)


def workspace_storage(directory: str) -> str:
    """Store name for a workspace: short readable head plus a checksum."""
    head = directory[:12] or "workspace"
    return f"workspace.{head}.{checksum(directory) or '0'}"


class Persist:
    """Constructors for the supported scopes."""

    @staticmethod
    def global_(key: str, legacy: tuple[str, ...] | list[str] = (), *, migrate=None) -> PersistTarget:
        return PersistTarget(
            key=key,
            storage=get_settings_instance().global_store_name,
            legacy=tuple(legacy),
            migrate=migrate,
        )

    @staticmethod
    def workspace(directory: str, key: str, legacy: tuple[str, ...] | list[str] = (), *, migrate=None) -> PersistTarget:
        return PersistTarget(
            key=f"workspace:{key}",
            storage=workspace_storage(directory),
            legacy=tuple(legacy),
            migrate=migrate,
        )

    @staticmethod
    def session(
        directory: str, session: str, key: str, legacy: tuple[str, ...] | list[str] = (), *, migrate=None
    ) -> PersistTarget:
        return PersistTarget(
            key=f"session:{session}:{key}",
            storage=workspace_storage(directory),
            legacy=tuple(legacy),
            migrate=migrate,
        )

    @staticmethod
    def scoped(
        directory: str, session: str | None, key: str, legacy: tuple[str, ...] | list[str] = (), *, migrate=None
    ) -> PersistTarget:
        """Session scope when a session id is given, workspace scope otherwise."""
        if session:
            return Persist.session(directory, session, key, legacy, migrate=migrate)
        return Persist.workspace(directory, key, legacy, migrate=migrate)
