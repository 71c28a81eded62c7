"""Graph JSON parser — converts raw node/edge lists into IR structures.

Accepted node shapes::

    {"id": "n1", "specId": "merge", "config": {...}}
    {"id": "n1", "type": "...", "data": {"specId": "merge", "config": {...}, "title": "..."}}

Spec id aliases (``openai-chat`` …) are resolved to their canonical names here
so every later stage sees one vocabulary.
"""

from __future__ import annotations

from typing import Any, Iterable

from flowengine.compiler.ir import Edge, Graph, Node
from flowengine.compiler.validator import ValidationError
from flowengine.registry.node_registry import canonical_spec_id


def parse_graph(nodes_raw: Iterable[Any] | None, edges_raw: Iterable[Any] | None) -> Graph:
    """Parse raw node and edge lists into a Graph.

    Structural problems that make a node or edge unreadable raise
    ValidationError; semantic checks live in the validator.
    """
    errors: list[str] = []
    nodes: list[Node] = []
    edges: list[Edge] = []

    for index, raw in enumerate(nodes_raw or []):
        node = _parse_node(index, raw, errors)
        if node is not None:
            nodes.append(node)

    for index, raw in enumerate(edges_raw or []):
        edge = _parse_edge(index, raw, errors)
        if edge is not None:
            edges.append(edge)

    if errors:
        raise ValidationError(errors)
    return Graph(nodes, edges)


# ── Internal helpers ────────────────────────────────────────────


def _get(raw: Any, *keys: str) -> Any:
    for key in keys:
        if isinstance(raw, dict):
            value = raw.get(key)
        else:
            value = getattr(raw, key, None)
        if value is not None:
            return value
    return None


def _parse_node(index: int, raw: Any, errors: list[str]) -> Node | None:
    node_id = _get(raw, "id")
    if not isinstance(node_id, str) or not node_id.strip():
        errors.append(f"Node #{index}: missing 'id'.")
        return None

    data = _get(raw, "data") or {}
    spec_id = _get(raw, "specId", "spec_id") or _get(data, "specId", "spec_id")
    if not isinstance(spec_id, str) or not spec_id:
        errors.append(f"Node '{node_id}': missing 'specId'.")
        return None

    config = _get(raw, "config")
    if config is None:
        config = _get(data, "config")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        errors.append(f"Node '{node_id}': 'config' must be an object.")
        return None

    title = _get(raw, "title") or _get(data, "title")
    return Node(
        id=node_id,
        spec_id=canonical_spec_id(spec_id),
        config=config,
        title=title if isinstance(title, str) else None,
        index=index,
    )


def _parse_edge(index: int, raw: Any, errors: list[str]) -> Edge | None:
    source = _get(raw, "source")
    target = _get(raw, "target")
    if not isinstance(source, str) or not isinstance(target, str):
        errors.append(f"Edge #{index}: 'source' and 'target' are required.")
        return None
    return Edge(
        source=source,
        target=target,
        source_handle=_handle(_get(raw, "sourceHandle", "source_handle")),
        target_handle=_handle(_get(raw, "targetHandle", "target_handle")),
        id=_get(raw, "id"),
        index=index,
    )


def _handle(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
