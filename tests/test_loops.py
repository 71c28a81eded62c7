"""Loop execution: per-element body passes, error handling and nesting."""

from __future__ import annotations

import pytest

from flowengine.runtime.engine import run_flow
from flowengine.runtime.state import WorkflowStatus


def _flow(nodes, edges, inputs):
    return {
        "nodes": [{"id": n[0], "specId": n[1], "config": n[2] if len(n) > 2 else {}} for n in nodes],
        "edges": [{"source": s, "target": t} for s, t in edges],
        "inputs": inputs,
    }


def _parse_loop(items, **loop_config):
    return _flow(
        [("items", "input"), ("each", "loop", loop_config), ("parse", "json-parse"), ("done", "loop-end"), ("out", "output")],
        [("items", "each"), ("each", "parse"), ("parse", "done"), ("done", "out")],
        {"items": items},
    )


class TestLoopBasics:
    @pytest.mark.asyncio
    async def test_body_runs_per_element(self, loop_flow):
        result = await run_flow(loop_flow)
        assert result.workflow_status == WorkflowStatus.COMPLETED
        assert result.final_outputs == [{"nodeId": "result", "value": ["item-1", "item-2", "item-3"]}]
        assert result.node_status["label"] == "success"
        assert result.outputs_by_node["label"] == ["item-1", "item-2", "item-3"]

    @pytest.mark.asyncio
    async def test_iteration_traces(self, loop_flow):
        result = await run_flow(loop_flow)
        label_traces = [t for t in result.node_traces if t.node_id == "label"]
        assert [t.iteration for t in label_traces] == [0, 1, 2]
        assert {t.loop_id for t in label_traces} == {"each"}
        loop_trace = next(t for t in result.node_traces if t.node_id == "each")
        assert loop_trace.iteration is None

    @pytest.mark.asyncio
    async def test_max_iterations(self, loop_flow):
        loop_flow["nodes"][1]["config"] = {"maxIterations": 2}
        result = await run_flow(loop_flow)
        assert result.final_outputs[0]["value"] == ["item-1", "item-2"]

    @pytest.mark.asyncio
    async def test_empty_list(self, loop_flow):
        loop_flow["inputs"] = {"items": []}
        result = await run_flow(loop_flow)
        assert result.node_status["each"] == "success"
        assert result.outputs_by_node["done"] == []

    @pytest.mark.asyncio
    async def test_loop_without_end_returns_elements(self):
        payload = _flow(
            [("items", "input"), ("each", "loop", {"maxIterations": 3}), ("out", "output")],
            [("items", "each"), ("each", "out")],
            {"items": [1, 2, 3, 4, 5]},
        )
        result = await run_flow(payload)
        assert result.final_outputs == [{"nodeId": "out", "value": [1, 2, 3]}]

    @pytest.mark.asyncio
    async def test_loop_scope_variables(self):
        payload = _flow(
            [
                ("items", "input"),
                ("each", "loop"),
                ("t", "template", {"template": "{{loop.index}}/{{loop.count}}:{{item.name}}"}),
                ("done", "loop-end"),
                ("out", "output"),
            ],
            [("items", "each"), ("each", "t"), ("t", "done"), ("done", "out")],
            {"items": [{"name": "a"}, {"name": "b"}]},
        )
        result = await run_flow(payload)
        assert result.final_outputs[0]["value"] == ["0/2:a", "1/2:b"]

    @pytest.mark.asyncio
    async def test_non_list_input_fails(self):
        result = await run_flow(_parse_loop("not a list"))
        assert result.node_status["each"] == "error"
        assert result.node_status["parse"] == "skipped"
        assert result.workflow_status == WorkflowStatus.FAILED


class TestLoopErrors:
    @pytest.mark.asyncio
    async def test_continue_on_error(self):
        result = await run_flow(_parse_loop(['{"a": 1}', "{bad", '{"a": 3}'], continueOnError=True))
        assert result.node_status["each"] == "success"
        assert result.node_status["parse"] == "error"
        assert result.final_outputs[0]["value"] == [{"a": 1}, None, {"a": 3}]
        assert result.workflow_status == WorkflowStatus.COMPLETED_WITH_SKIPS

    @pytest.mark.asyncio
    async def test_failure_stops_loop(self):
        result = await run_flow(_parse_loop(['{"a": 1}', "{bad", '{"a": 3}']))
        assert result.node_status["each"] == "error"
        assert result.node_status["parse"] == "error"
        assert result.node_status["done"] == "skipped"
        assert result.workflow_status == WorkflowStatus.FAILED
        loop_trace = next(t for t in result.node_traces if t.node_id == "each")
        assert loop_trace.error == "Loop 'each' iteration 1 failed at: parse"
        # The third element never ran.
        assert [t.iteration for t in result.node_traces if t.node_id == "parse"] == [0, 1]


class TestNestedLoops:
    @pytest.mark.asyncio
    async def test_inner_loop_per_outer_element(self):
        payload = _flow(
            [
                ("rows", "input"),
                ("outer", "loop"),
                ("inner", "loop"),
                ("cell", "template", {"template": "{{item}}!"}),
                ("inner_end", "loop-end"),
                ("outer_end", "loop-end"),
                ("out", "output"),
            ],
            [
                ("rows", "outer"), ("outer", "inner"), ("inner", "cell"), ("cell", "inner_end"),
                ("inner_end", "outer_end"), ("outer_end", "out"),
            ],
            {"rows": [[1, 2], [3]]},
        )
        result = await run_flow(payload)
        assert result.workflow_status == WorkflowStatus.COMPLETED
        assert result.final_outputs[0]["value"] == [["1!", "2!"], ["3!"]]
        cell_traces = [t for t in result.node_traces if t.node_id == "cell"]
        assert len(cell_traces) == 3
        assert {t.loop_id for t in cell_traces} == {"inner"}
