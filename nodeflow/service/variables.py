"""Path resolution over the state bag.

Paths look like ``$.data.items[0].name``. Resolution never raises: any
missing intermediate yields ``MISSING``, which callers keep distinct from an
explicit ``None`` stored in state.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any, Dict, List, Union

_SEGMENT_RE = re.compile(r"\[(\d+)\]|([^.\[\]]+)")
_EXPRESSION_VAR_RE = re.compile(r"\$\.[\w.\[\]]+")
_TEMPLATE_VAR_RE = re.compile(r"\$\{(\$\.[^}]+)\}")

# Key under which executors see the results of already completed nodes
NODE_RESULTS_KEY = "nodeResults"


class _Missing:
    """Marker for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def is_variable_reference(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("$")


def parse_path(path: str) -> List[Union[str, int]]:
    """Split ``$.a.b[0]`` into ``["a", "b", 0]``."""
    body = path[2:] if path.startswith("$.") else path[1:]
    parts: List[Union[str, int]] = []
    for match in _SEGMENT_RE.finditer(body):
        index, key = match.groups()
        parts.append(int(index) if index is not None else key)
    return parts


def _step(current: Any, part: Union[str, int]) -> Any:
    if current is None or current is MISSING:
        return MISSING
    if isinstance(part, int):
        if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            return current[part] if 0 <= part < len(current) else MISSING
        if isinstance(current, Mapping):
            return current.get(str(part), MISSING)
        return MISSING
    if isinstance(current, Mapping):
        return current.get(part, MISSING)
    if isinstance(current, (list, tuple, str)):
        # Arrays and strings expose their length, as in the expression language
        if part == "length":
            return len(current)
        if part.isdigit():
            return _step(current, int(part))
    return MISSING


def resolve_variable(path: Any, state: Mapping[str, Any]) -> Any:
    """Resolve a ``$.path`` reference against ``state``.

    Values that are not variable references are returned unchanged.
    """
    if not is_variable_reference(path):
        return path
    current: Any = state
    for part in parse_path(path):
        current = _step(current, part)
        if current is MISSING:
            return MISSING
    return current


def resolve_variables(value: Any, state: Mapping[str, Any]) -> Any:
    """Resolve references recursively inside dicts, lists and string templates.

    A string that is exactly ``$.path`` is replaced by the resolved value.
    ``${$.path}`` fragments inside a longer string are interpolated; fragments
    that do not resolve are left verbatim.
    """
    if isinstance(value, str):
        if value.startswith("$."):
            return resolve_variable(value, state)

        def _interpolate(match: re.Match) -> str:
            resolved = resolve_variable(match.group(1), state)
            if resolved is MISSING:
                return match.group(0)
            return resolved if isinstance(resolved, str) else _to_literal(resolved)

        return _TEMPLATE_VAR_RE.sub(_interpolate, value)
    if isinstance(value, list):
        return [resolve_variables(item, state) for item in value]
    if isinstance(value, dict):
        return {k: resolve_variables(v, state) for k, v in value.items()}
    return value


def with_input(state: Mapping[str, Any], initial_data: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Extended view exposing the run input under ``input``."""
    return {**state, "input": dict(initial_data or {})}


def _to_literal(value: Any) -> str:
    if value is None or value is MISSING:
        return "null"
    return json.dumps(value, default=str)


def substitute_variables(expression: str, state: Mapping[str, Any]) -> str:
    """Replace every ``$.path`` in ``expression`` with its JSON literal."""
    return _EXPRESSION_VAR_RE.sub(
        lambda match: _to_literal(resolve_variable(match.group(0), state)),
        expression,
    )
