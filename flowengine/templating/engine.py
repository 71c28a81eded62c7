"""``{{path}}`` placeholder rendering over a nested context.

A placeholder may carry a fallback after a pipe, ``{{user.name | 'anon'}}``.
Paths walk mappings by key and lists by index; ``length``, ``len`` and
``count`` on a list give its size.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*(?:\|\s*(.+?))?\s*\}\}")

_LIST_SIZE = frozenset({"length", "len", "count"})
_MISSING = object()


def _walk(path: str, ctx: Mapping[str, Any]) -> Any:
    node: Any = ctx
    for step in path.split("."):
        if node is None:
            return None
        if isinstance(node, Mapping):
            node = node.get(step, _MISSING)
        elif isinstance(node, list) and step in _LIST_SIZE:
            node = len(node)
        elif isinstance(node, list) and step.isdigit():
            node = node[int(step)] if int(step) < len(node) else _MISSING
        else:
            node = _MISSING
        if node is _MISSING:
            return _MISSING
    return node


def resolve_path(path: str, ctx: Mapping[str, Any]) -> Any:
    """Value at dotted *path* in *ctx*, or ``None`` when absent."""
    value = _walk(path, ctx)
    return None if value is _MISSING else value


def stringify(value: Any) -> str:
    """Text form used when a value is spliced into a template."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_template_str(template: str, ctx: Mapping[str, Any]) -> str:
    """Substitute every placeholder in *template*.

    A placeholder whose path is missing or null renders its fallback, with
    surrounding quotes dropped; without a fallback it stays in the text as
    written.
    """
    if not isinstance(template, str):
        return template

    def substitute(match: re.Match) -> str:
        path, fallback = match.groups()
        value = _walk(path, ctx)
        if value is not _MISSING and value is not None:
            return stringify(value)
        if fallback:
            return fallback.strip().strip("'\"")
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template)
