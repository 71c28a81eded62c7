"""Binder — pairs loop nodes with their loop-end markers and derives loop bodies.

A loop body is delimited by an explicit ``loop-end`` node.  The pairing is
taken from ``config.loopId`` when set, otherwise from the innermost unpaired
loop upstream of the loop-end.  Body = every node on a path loop → … →
loop-end (plus the loop-end itself).

Results are stored on ``graph.loop_scopes``; structural violations are
returned as error strings for the validator to report.
"""

from __future__ import annotations

from itertools import combinations

from flowengine.compiler.ir import LOOP_END_SPEC_ID, LOOP_SPEC_ID, Graph, LoopScope


def bind_loop_scopes(graph: Graph, max_depth: int | None = None) -> list[str]:
    """Populate ``graph.loop_scopes``.  Requires an acyclic graph."""
    errors: list[str] = []
    loops = [n.id for n in graph.nodes_of(LOOP_SPEC_ID)]
    loop_set = set(loops)
    position = {nid: i for i, nid in enumerate(graph.topological_order())}
    ends = sorted(graph.nodes_of(LOOP_END_SPEC_ID), key=lambda n: position.get(n.id, 0))

    paired: dict[str, str] = {}
    for end in ends:
        upstream = graph.ancestors(end.id)
        explicit = end.config.get("loopId")
        if explicit:
            if explicit not in loop_set:
                errors.append(f"Node '{end.id}': loopId '{explicit}' is not a loop node.")
                continue
            if explicit not in upstream:
                errors.append(f"Node '{end.id}': loop-end is not downstream of loop '{explicit}'.")
                continue
            loop_id = explicit
        else:
            candidates = [lid for lid in loops if lid in upstream and lid not in paired]
            innermost = [
                c for c in candidates
                if not (graph.descendants(c) & (set(candidates) - {c}))
            ]
            if len(innermost) != 1:
                found = ", ".join(f"'{c}'" for c in innermost) or "none"
                errors.append(
                    f"Node '{end.id}': cannot determine which loop this loop-end closes "
                    f"(candidates: {found}); set config.loopId."
                )
                continue
            loop_id = innermost[0]
        if loop_id in paired:
            errors.append(
                f"Loop '{loop_id}' has more than one loop-end ('{paired[loop_id]}', '{end.id}')."
            )
            continue
        paired[loop_id] = end.id

        incoming = graph.incoming(end.id)
        if len(incoming) != 1:
            errors.append(
                f"Node '{end.id}': loop-end must have exactly one incoming edge, found {len(incoming)}."
            )

    scopes: dict[str, LoopScope] = {}
    for loop_id in loops:
        end_id = paired.get(loop_id)
        if end_id is None:
            scopes[loop_id] = LoopScope(loop_id=loop_id, end_id=None)
            continue
        body = (graph.descendants(loop_id) & graph.ancestors(end_id)) | {end_id}
        scopes[loop_id] = LoopScope(loop_id=loop_id, end_id=end_id, body=frozenset(body))
    graph.loop_scopes = scopes

    for scope in scopes.values():
        if scope.end_id is not None:
            errors.extend(_check_body(graph, scope))

    for a, b in combinations(scopes.values(), 2):
        overlap = a.body & b.body
        if not overlap:
            continue
        if a.body <= b.body:
            inner, outer = a, b
        elif b.body <= a.body:
            inner, outer = b, a
        else:
            errors.append(f"Loops '{a.loop_id}' and '{b.loop_id}' have overlapping bodies; nest them instead.")
            continue
        if inner.loop_id not in outer.body:
            errors.append(
                f"Loop '{inner.loop_id}' shares body nodes with loop '{outer.loop_id}' but is not inside it."
            )

    if max_depth is not None and not errors:
        for loop_id in loops:
            if graph.loop_depth(loop_id) > max_depth:
                errors.append(f"Loop '{loop_id}' is nested deeper than the maximum of {max_depth}.")

    return errors


def _check_body(graph: Graph, scope: LoopScope) -> list[str]:
    errors: list[str] = []
    loop_id, end_id = scope.loop_id, scope.end_id
    allowed_sources = set(scope.body) | {loop_id} | graph.ancestors(loop_id)

    for nid in sorted(scope.body, key=lambda n: graph.node(n).index):
        node = graph.node(nid)
        if node.spec_id == "output":
            errors.append(f"Node '{nid}': output nodes cannot be inside the body of loop '{loop_id}'.")
        for edge in graph.incoming(nid):
            if edge.source not in allowed_sources:
                errors.append(
                    f"Node '{nid}' inside loop '{loop_id}' receives input from '{edge.source}', "
                    f"which is neither in the loop body nor upstream of the loop."
                )
        if nid == end_id:
            continue
        for edge in graph.outgoing(nid):
            if edge.target not in scope.body:
                errors.append(
                    f"Node '{nid}' inside loop '{loop_id}' feeds '{edge.target}' outside the loop; "
                    f"route results through loop-end '{end_id}'."
                )

    for edge in graph.outgoing(loop_id):
        if edge.target not in scope.body:
            errors.append(
                f"Loop '{loop_id}' feeds '{edge.target}' directly; connect downstream nodes to "
                f"loop-end '{end_id}'."
            )
    return errors
