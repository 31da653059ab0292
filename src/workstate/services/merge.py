"""Defaults-guided reconciliation of stored JSON.

Every stored value is merged against the caller's defaults on read, so the
result always has the current shape: missing keys come from the defaults,
known paths keep the default's container type, and keys the defaults do
not know about (e.g. written by a newer version) are carried through.
"""

import json
from collections.abc import Callable
from typing import Any, Union

from ..core.exceptions import MigrationError

JSONValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]


class _Missing:
    """Marker for "no value at this path" (distinct from JSON null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def snapshot(value: Any) -> JSONValue:
    """Deep structural copy through JSON (tuples become lists)."""
    return json.loads(json.dumps(value))


def parse_json(raw: str) -> Any:
    """Parse ``raw``; returns MISSING when it is not valid JSON."""
    try:
        return json.loads(raw)
    except ValueError:
        return MISSING


def serialize(value: Any) -> str:
    """Compact JSON, matching what a browser's JSON.stringify produces."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def merge(defaults: Any, value: Any) -> Any:
    """Merge ``value`` over ``defaults`` node by node.

    - missing value keeps the default
    - explicit null replaces the default
    - array defaults are replaced only by arrays, never merged element-wise
    - object defaults are shallow-copied, then every incoming key is merged
      recursively when the defaults know it and copied through otherwise
    - scalar defaults take the incoming value as is
    """
    if value is MISSING:
        return defaults
    if value is None:
        return None

    if isinstance(defaults, list):
        return value if isinstance(value, list) else defaults

    if isinstance(defaults, dict):
        if not isinstance(value, dict):
            return defaults
        result = dict(defaults)
        for key, incoming in value.items():
            if key in defaults:
                result[key] = merge(defaults[key], incoming)
            else:
                result[key] = incoming
        return result

    return value


def normalize(
    raw: str,
    defaults: Any,
    migrate: Callable[[Any], Any] | None = None,
    *,
    name: str = "",
) -> str:
    """Run ``raw`` through parse, migrate and merge; return the new JSON text.

    Text that is not JSON is returned unchanged.

    Raises:
        MigrationError: If ``migrate`` raises.
    """
    parsed = parse_json(raw)
    if parsed is MISSING:
        return raw

    if migrate is not None:
        try:
            parsed = migrate(parsed)
        except Exception as e:
            raise MigrationError(name, str(e)) from e

    return serialize(merge(defaults, parsed))
