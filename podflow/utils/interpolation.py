"""``{{path}}`` placeholder substitution for node parameters.

Paths use dots and brackets, e.g. ``{{trigger.data.user.id}}`` or
``{{steps["fetch-users"].data.items[0].name}}``. Placeholders that do not
resolve are left untouched.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Mapping, Union

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_PATH_TOKEN = re.compile(r"""\[\s*(?:"([^"]*)"|'([^']*)'|(\d+))\s*\]|([^.\[\]]+)""")

_MISSING = object()


def parse_path(path: str) -> List[Union[str, int]]:
    """Split ``a.b[0]["c-d"]`` into ``["a", "b", 0, "c-d"]``."""
    parts: List[Union[str, int]] = []
    for match in _PATH_TOKEN.finditer(path):
        double, single, index, name = match.groups()
        if index is not None:
            parts.append(int(index))
        elif name is not None:
            parts.append(name.strip())
        else:
            parts.append(double if double is not None else single)
    return parts


def lookup(context: Any, path: str) -> Any:
    """Resolve ``path`` in ``context``; returns ``_MISSING`` when absent."""
    current = context
    for part in parse_path(path):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING) if isinstance(part, str) else _MISSING
        elif isinstance(current, (list, tuple)):
            if isinstance(part, str) and part.isdigit():
                part = int(part)
            if not isinstance(part, int) or part >= len(current):
                return _MISSING
            current = current[part]
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate_string(text: str, context: Mapping[str, Any]) -> str:
    def replace(match: "re.Match[str]") -> str:
        value = lookup(context, match.group(1).strip())
        if value is _MISSING:
            logger.warning(f"Variable not found: {match.group(1).strip()}")
            return match.group(0)
        return _render(value)

    return VARIABLE_PATTERN.sub(replace, text)


def interpolate(value: Any, context: Mapping[str, Any]) -> Any:
    """Return a copy of ``value`` with placeholders in every string replaced.

    Strings nested in dicts and lists are processed; other values are
    returned as they are. Objects are embedded as JSON.
    """
    if isinstance(value, str):
        return interpolate_string(value, context) if "{{" in value else value
    if isinstance(value, list):
        return [interpolate(item, context) for item in value]
    if isinstance(value, dict):
        return {key: interpolate(item, context) for key, item in value.items()}
    return value


def has_variables(value: Any) -> bool:
    if isinstance(value, str):
        return VARIABLE_PATTERN.search(value) is not None
    if isinstance(value, list):
        return any(has_variables(item) for item in value)
    if isinstance(value, dict):
        return any(has_variables(item) for item in value.values())
    return False
