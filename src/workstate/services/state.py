"""Minimal mutable state container with a path-based setter.

Persisted bindings only need an in-memory mirror they can overwrite after
loading and a setter they can wrap. Applications with their own reactive
layer pass their own ``(state, set_state)`` pair instead.

``set_state(value)`` replaces the whole state in place (the state object
keeps its identity). ``set_state("a", 0, "b", value)`` replaces the node
at that path. Either form accepts a callable that receives the previous
value and returns the new one.
"""

import copy
from collections.abc import Callable
from typing import Any

StateSetter = Callable[..., None]


def _resolve(value: Any, previous: Any) -> Any:
    return value(previous) if callable(value) else value


def replace_in_place(state: Any, value: Any) -> None:
    """Overwrite the contents of a dict or list state with ``value``."""
    if isinstance(state, dict) and isinstance(value, dict):
        state.clear()
        state.update(value)
    elif isinstance(state, list) and isinstance(value, list):
        state[:] = value
    else:
        raise TypeError(
            f"cannot replace {type(state).__name__} state with {type(value).__name__}"
        )


def create_store(initial: dict | list) -> tuple[Any, StateSetter]:
    """Return ``(state, set_state)`` over a private copy of ``initial``."""
    if not isinstance(initial, (dict, list)):
        raise TypeError("state must be a dict or a list")
    state: Any = copy.deepcopy(initial)

    def set_state(*args: Any) -> None:
        if not args:
            raise TypeError("set_state() needs at least a value")
        if len(args) == 1:
            replace_in_place(state, _resolve(args[0], state))
            return

        *path, value = args
        node = state
        for part in path[:-1]:
            node = node[part]
        last = path[-1]
        if isinstance(node, list):
            node[last] = _resolve(value, node[last])
        else:
            node[last] = _resolve(value, node.get(last))

    return state, set_state
