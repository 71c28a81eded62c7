"""Graph validator — checks structure and node configs before execution."""

from __future__ import annotations

import logging

import pydantic

from flowengine.compiler.ir import Graph

logger = logging.getLogger("flowengine.compiler.validator")

_CONDITION_PORTS = frozenset({"true", "false"})
_MAX_PROVIDER_NODES = 10
_MAX_DEPTH = 20


class ValidationError(Exception):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Graph validation failed: {errors}")


def validate_graph(graph: Graph, registry=None, max_nodes: int | None = None, max_loop_depth: int | None = None) -> list[str]:
    """Return a list of error strings. Empty list means valid.

    Also binds loop scopes onto *graph* as a side effect.
    """
    from flowengine.compiler.binder import bind_loop_scopes
    from flowengine.config import settings
    from flowengine.registry.node_registry import get_registry

    registry = registry or get_registry()
    max_nodes = settings.MAX_NODES if max_nodes is None else max_nodes
    max_loop_depth = settings.LOOP_MAX_DEPTH if max_loop_depth is None else max_loop_depth
    errors: list[str] = []

    if not graph.nodes:
        return ["Workflow has no nodes."]

    for dup in graph.duplicate_ids:
        errors.append(f"Duplicate node id '{dup}'.")

    if max_nodes and len(graph.nodes) > max_nodes:
        errors.append(
            f"Workflow contains {len(graph.nodes)} nodes, which exceeds the maximum of {max_nodes}."
        )

    # ── Edges ───────────────────────────────────────────────────
    for edge in graph.edges:
        if edge.source not in graph.nodes:
            errors.append(f"Edge '{edge.label}': source node '{edge.source}' not found.")
        if edge.target not in graph.nodes:
            errors.append(f"Edge '{edge.label}': target node '{edge.target}' not found.")
        if edge.source == edge.target:
            errors.append(f"Edge '{edge.label}': node '{edge.source}' cannot feed itself.")

    # ── Spec ids & configs ──────────────────────────────────────
    for nid, node in graph.nodes.items():
        spec = registry.get(node.spec_id)
        if spec is None:
            errors.append(f"Node '{nid}': unknown node type '{node.spec_id}'.")
            continue
        try:
            spec.validate_config(dict(node.config))
        except pydantic.ValidationError as exc:
            for err in exc.errors():
                loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
                errors.append(f"Node '{nid}' ({node.spec_id}): {loc}: {err.get('msg')}")

        if node.spec_id == "condition":
            for edge in graph.outgoing(nid):
                if edge.source_handle is not None and edge.source_handle not in _CONDITION_PORTS:
                    errors.append(
                        f"Edge '{edge.label}': condition port must be 'true' or 'false', "
                        f"got '{edge.source_handle}'."
                    )

    # ── Cycles ──────────────────────────────────────────────────
    if any(e.source not in graph.nodes or e.target not in graph.nodes for e in graph.edges):
        return errors
    cycle = graph.find_cycle()
    if cycle:
        errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}.")
        return errors

    # ── Loop bodies ─────────────────────────────────────────────
    errors.extend(bind_loop_scopes(graph, max_depth=max_loop_depth))
    return errors


def graph_warnings(graph: Graph, registry=None) -> list[str]:
    """Non-fatal findings, logged before a run starts."""
    from flowengine.registry.node_registry import get_registry

    registry = registry or get_registry()
    warnings: list[str] = []

    if len(graph.nodes) > 1:
        for nid in graph.nodes:
            if not graph.incoming(nid) and not graph.outgoing(nid):
                warnings.append(f"Node '{nid}' is not connected to any other node.")

    provider_nodes = [
        n.id for n in graph.nodes.values()
        if (spec := registry.get(n.spec_id)) is not None and spec.calls_provider
    ]
    if len(provider_nodes) > _MAX_PROVIDER_NODES:
        warnings.append(
            f"Workflow calls external providers from {len(provider_nodes)} nodes; "
            f"runs may be slow and costly."
        )

    if graph.depth() > _MAX_DEPTH:
        warnings.append(f"Workflow is {graph.depth()} nodes deep; consider parallel branches.")

    for node in graph.nodes_of("output"):
        if graph.outgoing(node.id):
            warnings.append(f"Output node '{node.id}' has outgoing edges; they are ignored for results.")

    if not graph.nodes_of("output"):
        warnings.append("Workflow has no output node; the run will be reported as failed.")
    return warnings


def ensure_valid(graph: Graph, registry=None) -> Graph:
    """Raise ValidationError when *graph* is invalid; log warnings otherwise."""
    errors = validate_graph(graph, registry)
    if errors:
        raise ValidationError(errors)
    for warning in graph_warnings(graph, registry):
        logger.warning("Graph warning: %s", warning)
    return graph
