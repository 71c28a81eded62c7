"""Tests for graph validation and loop binding."""

from __future__ import annotations

import pytest

from flowengine.compiler.parser import parse_graph
from flowengine.compiler.validator import ValidationError, ensure_valid, graph_warnings, validate_graph


def _graph(nodes, edges=()):
    return parse_graph(
        [{"id": n[0], "specId": n[1], "config": n[2] if len(n) > 2 else {}} for n in nodes],
        [{"source": e[0], "target": e[1], **({"sourceHandle": e[2]} if len(e) > 2 else {})} for e in edges],
    )


class TestValidateValid:
    def test_linear_valid(self, linear_flow):
        graph = parse_graph(linear_flow["nodes"], linear_flow["edges"])
        assert validate_graph(graph) == []

    def test_loop_valid(self, loop_flow):
        graph = parse_graph(loop_flow["nodes"], loop_flow["edges"])
        assert validate_graph(graph) == []

    def test_condition_ports_valid(self):
        graph = _graph(
            [("in", "input"), ("c", "condition"), ("y", "template"), ("n", "template"), ("out", "output")],
            [("in", "c"), ("c", "y", "true"), ("c", "n", "false"), ("y", "out"), ("n", "out")],
        )
        assert validate_graph(graph) == []

    def test_ensure_valid_returns_graph(self, linear_flow):
        graph = parse_graph(linear_flow["nodes"], linear_flow["edges"])
        assert ensure_valid(graph) is graph


class TestValidateInvalid:
    def test_empty_workflow(self):
        assert validate_graph(_graph([])) == ["Workflow has no nodes."]

    def test_duplicate_ids(self):
        errors = validate_graph(_graph([("a", "input"), ("a", "output")]))
        assert "Duplicate node id 'a'." in errors

    def test_too_many_nodes(self):
        graph = _graph([("a", "input"), ("b", "template"), ("c", "output")])
        errors = validate_graph(graph, max_nodes=2)
        assert any("exceeds the maximum of 2" in e for e in errors)

    def test_dangling_edges(self):
        errors = validate_graph(_graph([("a", "input")], [("a", "ghost"), ("phantom", "a")]))
        assert "Edge 'a->ghost': target node 'ghost' not found." in errors
        assert "Edge 'phantom->a': source node 'phantom' not found." in errors

    def test_self_loop(self):
        errors = validate_graph(_graph([("a", "merge")], [("a", "a")]))
        assert any("cannot feed itself" in e for e in errors)

    def test_cycle(self):
        graph = _graph([("a", "merge"), ("b", "merge"), ("c", "merge")], [("a", "b"), ("b", "c"), ("c", "a")])
        errors = validate_graph(graph)
        assert len(errors) == 1
        assert errors[0].startswith("Workflow contains a cycle:")

    def test_unknown_node_type(self):
        errors = validate_graph(_graph([("a", "teleport")]))
        assert errors == ["Node 'a': unknown node type 'teleport'."]

    def test_config_schema_error(self):
        graph = _graph([("img", "ai-image", {"model": "dall-e-2", "quality": "hd"})])
        errors = validate_graph(graph)
        assert len(errors) == 1
        assert errors[0].startswith("Node 'img' (ai-image):")

    def test_bad_http_method(self):
        errors = validate_graph(_graph([("h", "http-request", {"method": "TRACE"})]))
        assert any("unsupported HTTP method" in e for e in errors)

    def test_bad_condition_port(self):
        graph = _graph([("c", "condition"), ("x", "output")], [("c", "x", "maybe")])
        errors = validate_graph(graph)
        assert any("condition port must be 'true' or 'false'" in e for e in errors)

    def test_ensure_valid_raises(self):
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid(_graph([("a", "teleport")]))
        assert exc_info.value.errors == ["Node 'a': unknown node type 'teleport'."]


class TestLoopBinding:
    def test_scope_derived_from_loop_end(self, loop_flow):
        graph = parse_graph(loop_flow["nodes"], loop_flow["edges"])
        validate_graph(graph)
        scope = graph.loop_scopes["each"]
        assert scope.end_id == "done"
        assert scope.body == frozenset({"label", "done"})
        assert scope.inner == frozenset({"label"})

    def test_loop_without_end_has_empty_body(self):
        graph = _graph([("in", "input"), ("l", "loop"), ("out", "output")], [("in", "l"), ("l", "out")])
        assert validate_graph(graph) == []
        assert graph.loop_scopes["l"].end_id is None
        assert graph.loop_scopes["l"].body == frozenset()

    def test_body_feeding_outside_rejected(self):
        graph = _graph(
            [("in", "input"), ("l", "loop"), ("t", "template"), ("e", "loop-end"), ("out", "output"), ("leak", "output")],
            [("in", "l"), ("l", "t"), ("t", "e"), ("e", "out"), ("t", "leak")],
        )
        errors = validate_graph(graph)
        assert any("feeds 'leak' outside the loop" in e for e in errors)

    def test_loop_feeding_past_end_rejected(self):
        graph = _graph(
            [("in", "input"), ("l", "loop"), ("t", "template"), ("e", "loop-end"), ("out", "output")],
            [("in", "l"), ("l", "t"), ("t", "e"), ("e", "out"), ("l", "out")],
        )
        errors = validate_graph(graph)
        assert any("Loop 'l' feeds 'out' directly" in e for e in errors)

    def test_output_inside_body_rejected(self):
        graph = _graph(
            [("in", "input"), ("l", "loop"), ("o", "output"), ("e", "loop-end")],
            [("in", "l"), ("l", "o"), ("o", "e")],
        )
        errors = validate_graph(graph)
        assert any("output nodes cannot be inside the body" in e for e in errors)

    def test_loop_end_needs_single_input(self):
        graph = _graph(
            [("in", "input"), ("l", "loop"), ("a", "template"), ("b", "template"), ("e", "loop-end"), ("out", "output")],
            [("in", "l"), ("l", "a"), ("l", "b"), ("a", "e"), ("b", "e"), ("e", "out")],
        )
        errors = validate_graph(graph)
        assert any("exactly one incoming edge, found 2" in e for e in errors)

    def test_loop_end_without_loop(self):
        graph = _graph([("in", "input"), ("e", "loop-end"), ("out", "output")], [("in", "e"), ("e", "out")])
        errors = validate_graph(graph)
        assert any("cannot determine which loop" in e for e in errors)

    def test_explicit_loop_id_must_name_a_loop(self):
        graph = _graph(
            [("in", "input"), ("l", "loop"), ("e", "loop-end", {"loopId": "in"}), ("out", "output")],
            [("in", "l"), ("l", "e"), ("e", "out")],
        )
        errors = validate_graph(graph)
        assert "Node 'e': loopId 'in' is not a loop node." in errors

    def _nested(self):
        return _graph(
            [
                ("in", "input"), ("outer", "loop"), ("inner", "loop"), ("t", "template"),
                ("inner_end", "loop-end"), ("outer_end", "loop-end"), ("out", "output"),
            ],
            [
                ("in", "outer"), ("outer", "inner"), ("inner", "t"), ("t", "inner_end"),
                ("inner_end", "outer_end"), ("outer_end", "out"),
            ],
        )

    def test_nested_loops_pair_innermost_first(self):
        graph = self._nested()
        assert validate_graph(graph) == []
        assert graph.loop_scopes["inner"].end_id == "inner_end"
        assert graph.loop_scopes["outer"].end_id == "outer_end"
        assert graph.loop_scopes["outer"].body == frozenset({"inner", "t", "inner_end", "outer_end"})
        assert graph.loop_depth("inner") == 2
        assert graph.owning_loop("t") == "inner"

    def test_nesting_depth_limit(self):
        errors = validate_graph(self._nested(), max_loop_depth=1)
        assert errors == ["Loop 'inner' is nested deeper than the maximum of 1."]

    def test_hidden_by_outer_members(self):
        graph = self._nested()
        validate_graph(graph)
        assert graph.hidden_by(graph.nodes) == {"inner", "t", "inner_end"}
        assert graph.hidden_by({"inner", "t", "inner_end", "outer_end"}) == {"t"}


class TestGraphWarnings:
    def test_missing_output_warned(self):
        graph = _graph([("a", "input"), ("t", "template")], [("a", "t")])
        assert any("no output node" in w for w in graph_warnings(graph))

    def test_isolated_node_warned(self):
        graph = _graph([("a", "input"), ("b", "output"), ("lonely", "template")], [("a", "b")])
        assert "Node 'lonely' is not connected to any other node." in graph_warnings(graph)

    def test_clean_graph_has_no_warnings(self, linear_flow):
        graph = parse_graph(linear_flow["nodes"], linear_flow["edges"])
        assert graph_warnings(graph) == []
