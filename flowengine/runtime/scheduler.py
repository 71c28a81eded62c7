"""Graph scheduler — readiness, concurrent dispatch and skip propagation.

One coordinating coroutine per scheduler pass:

1. sweep the pending nodes in topological order, resolving each incoming
   edge to ``delivered`` / ``skipped`` / ``failed`` once its producer is
   terminal;
2. dispatch ready nodes as asyncio tasks (bounded by the run's resource
   pools), mark dead ones ``skipped`` without running them;
3. wait for the first task to finish, record its outcome, repeat.

Strict nodes need every incoming edge delivered.  Tolerant nodes (merge,
output ...) run on whatever subset was delivered, provided it is not empty.
A condition producer delivers only along edges whose ``sourceHandle``
matches the port it chose.

Loop bodies are owned by their loop node: a pass never schedules them
directly; the loop executor runs a nested pass per element and hands back
per-node outcomes which are settled here once the loop is terminal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from flowengine.compiler.ir import Edge, Node
from flowengine.runtime.executor_wrapper import AttemptOutcome, execute_with_retry
from flowengine.runtime.state import (
    ExecutionContext,
    NodeInputs,
    NodeResult,
    NodeStatus,
    WorkflowStatus,
    now_ms,
)
from flowengine.utils import run_cancel
from flowengine.utils.logger import ctx_node_id
from flowengine.utils.metrics import record_node_execution
from flowengine.utils.tracing import get_tracer

logger = logging.getLogger("flowengine.runtime.scheduler")
tracer = get_tracer("flowengine.runtime.scheduler")

DELIVERED = "delivered"
SKIPPED = "skipped"
FAILED = "failed"

_CANCELLED = object()


@dataclass(frozen=True)
class _Link:
    source: str
    edge: Edge | None = None  # None for the implicit loop → loop-end link


class Scheduler:
    """Drives one set of nodes (a whole graph, or one loop iteration) to completion."""

    def __init__(self, ctx: ExecutionContext, members: Iterable[str] | None = None) -> None:
        self.ctx = ctx
        graph = ctx.graph
        member_set = set(graph.nodes) if members is None else set(members)
        self.members = [nid for nid in graph.nodes if nid in member_set]
        hidden = graph.hidden_by(self.members)
        order = [nid for nid in graph.topological_order() if nid in member_set]
        self.order = [nid for nid in order if nid not in hidden]
        self._owned_loops = {
            lid for lid in self.order if lid in graph.loop_scopes
        }
        self._tasks: dict[asyncio.Task, str] = {}
        self._dispatched: set[str] = set()

    # ── Public ──────────────────────────────────────────────────

    async def run(self) -> None:
        for nid in self.members:
            self.ctx.statuses[nid] = NodeStatus.PENDING
        try:
            while True:
                self._sweep()
                if not self._tasks:
                    break
                done, _ = await asyncio.wait(
                    list(self._tasks), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    node_id = self._tasks.pop(task)
                    self._complete(node_id, task.result())
        finally:
            # Only reached with live tasks when the pass itself is cancelled.
            for task in self._tasks:
                task.cancel()

        for nid in self.members:
            if not self.ctx.status_of(nid).terminal:
                logger.warning("Node %s never reached a terminal status; marking skipped", nid)
                self._skip(nid, "unreachable")

    # ── Readiness ───────────────────────────────────────────────

    def _links(self, node_id: str) -> list[_Link]:
        loop_id = self.ctx.graph.loop_for_end(node_id)
        if loop_id is not None and loop_id in self._owned_loops:
            return [_Link(source=loop_id)]
        return [_Link(source=e.source, edge=e) for e in self.ctx.graph.incoming(node_id)]

    def _link_state(self, link: _Link) -> str | None:
        status = self.ctx.status_of(link.source)
        if not status.terminal:
            return None
        if status == NodeStatus.SKIPPED:
            return SKIPPED
        if status == NodeStatus.ERROR:
            return FAILED
        port = self.ctx.ports.get(link.source)
        handle = link.edge.source_handle if link.edge is not None else None
        if port is not None and handle is not None and handle != port:
            return SKIPPED
        return DELIVERED

    def _sweep(self) -> None:
        cancelled = run_cancel.is_cancelled(self.ctx.run_id)
        for nid in self.order:
            if nid in self._dispatched or self.ctx.status_of(nid).terminal:
                continue
            if cancelled:
                self._skip(nid, "run cancelled")
                continue
            links = self._links(nid)
            states = [self._link_state(link) for link in links]
            if any(state is None for state in states):
                continue

            spec = self.ctx.registry.get(self.ctx.graph.node(nid).spec_id)
            delivered = [link for link, state in zip(links, states) if state == DELIVERED]
            if spec.tolerant:
                runnable = bool(delivered) or not links
            else:
                runnable = len(delivered) == len(links)

            if runnable:
                self._dispatch(nid, spec, self._gather(links, states))
            else:
                self._skip(nid, _skip_reason(states))

    def _gather(self, links: list[_Link], states: list[str | None]) -> NodeInputs:
        inputs = NodeInputs()
        for link, state in zip(links, states):
            if state != DELIVERED:
                continue
            value = self.ctx.outputs.get(link.source)
            inputs.values.append(value)
            inputs.sources.append(link.source)
            if link.edge is not None and link.edge.target_handle:
                inputs.by_port[link.edge.target_handle] = value
        return inputs

    # ── Dispatch & completion ───────────────────────────────────

    def _dispatch(self, node_id: str, spec, inputs: NodeInputs) -> None:
        node = self.ctx.graph.node(node_id)
        self._dispatched.add(node_id)
        task = asyncio.create_task(self._execute(node, spec, inputs), name=f"node:{node_id}")
        self._tasks[task] = node_id

    async def _execute(self, node: Node, spec, inputs: NodeInputs) -> Any:
        pools = self.ctx.pools
        resource_class = None if spec.owns_scope else spec.resource_class
        if pools is None:
            return await self._attempt(node, spec, inputs)
        async with pools.slot(resource_class):
            if run_cancel.is_cancelled(self.ctx.run_id):
                return _CANCELLED
            return await self._attempt(node, spec, inputs)

    async def _attempt(self, node: Node, spec, inputs: NodeInputs) -> AttemptOutcome:
        self.ctx.statuses[node.id] = NodeStatus.RUNNING
        self.ctx.emitter.node_status(node.id, spec.spec_id, NodeStatus.RUNNING, startMs=now_ms())
        token = ctx_node_id.set(node.id)
        try:
            with tracer.start_as_current_span(f"node {spec.spec_id}") as span:
                span.set_attribute("flowengine.node_id", node.id)
                span.set_attribute("flowengine.spec_id", spec.spec_id)
                if self.ctx.iteration is not None:
                    span.set_attribute("flowengine.iteration", self.ctx.iteration)
                outcome = await execute_with_retry(spec, node, inputs, self.ctx)
                span.set_attribute("flowengine.status", "success" if outcome.ok else "error")
                span.set_attribute("flowengine.retries", outcome.retries)
                return outcome
        finally:
            ctx_node_id.reset(token)

    def _complete(self, node_id: str, outcome: Any) -> None:
        node = self.ctx.graph.node(node_id)
        spec = self.ctx.registry.get(node.spec_id)
        if outcome is _CANCELLED:
            self._skip(node_id, "run cancelled")
            return

        timing = {"startMs": outcome.start_ms, "endMs": outcome.end_ms, "retries": outcome.retries}
        if outcome.ok:
            result: NodeResult = outcome.result
            self._finish(node_id, NodeStatus.SUCCESS, value=result.value, port=result.port)
            self.ctx.emitter.node_status(
                node_id, spec.spec_id, NodeStatus.SUCCESS,
                port=result.port, tokens=result.tokens, model=result.model, **timing,
            )
            record_node_execution(spec.spec_id, "success")
            if spec.owns_scope:
                self._settle_body(node_id, result)
            return

        message = str(outcome.error)
        if node.config.get("failurePolicy") == "use_fallback_value":
            logger.info("Node %s failed; using its fallback value: %s", node_id, message)
            fallback = node.config.get("fallbackValue")
            port = spec.fallback_port(fallback) if spec.fallback_port is not None else None
            self._finish(node_id, NodeStatus.SUCCESS, value=fallback, port=port)
            self.ctx.emitter.node_status(
                node_id, spec.spec_id, NodeStatus.SUCCESS, port=port, error=message, **timing
            )
            record_node_execution(spec.spec_id, "fallback")
        else:
            self._finish(node_id, NodeStatus.ERROR, error=message)
            self.ctx.emitter.node_status(
                node_id, spec.spec_id, NodeStatus.ERROR, error=message, **timing
            )
            record_node_execution(spec.spec_id, "error")
        if spec.owns_scope:
            self._settle_body(node_id, getattr(outcome.error, "partial", None))

    def _finish(self, node_id: str, status: NodeStatus, **kwargs: Any) -> None:
        self.ctx.record(node_id, status, **kwargs)

    def _skip(self, node_id: str, reason: str) -> None:
        node = self.ctx.graph.node(node_id)
        self.ctx.record(node_id, NodeStatus.SKIPPED)
        stamp = now_ms()
        self.ctx.emitter.node_status(
            node_id, node.spec_id, NodeStatus.SKIPPED, startMs=stamp, endMs=stamp, retries=0, reason=reason
        )
        record_node_execution(node.spec_id, "skipped")
        if node_id in self.ctx.graph.loop_scopes:
            self._settle_body(node_id, None)

    def _settle_body(self, loop_id: str, result: NodeResult | None) -> None:
        """Record outcomes for the nodes a finished loop owned."""
        scope = self.ctx.graph.loop_scopes.get(loop_id)
        if scope is None:
            return
        statuses = (result.body_statuses if result is not None else None) or {}
        outputs = (result.body_outputs if result is not None else None) or {}
        for nid in sorted(scope.inner, key=lambda n: self.ctx.graph.node(n).index):
            if self.ctx.status_of(nid).terminal:
                continue
            status = statuses.get(nid)
            if status is None:
                self._skip(nid, "loop did not run")
            else:
                self.ctx.record(nid, status, value=outputs.get(nid))


def _skip_reason(states: list[str | None]) -> str:
    if FAILED in states:
        return "upstream failed"
    return "upstream skipped"


def workflow_status(ctx: ExecutionContext) -> WorkflowStatus:
    """failed without an output value; completed_with_skips when anything else
    was skipped or errored; completed otherwise."""
    graph = ctx.graph
    produced = [
        n.id for n in graph.nodes.values()
        if _is_output(ctx, n) and ctx.status_of(n.id) == NodeStatus.SUCCESS
        and ctx.outputs.get(n.id) is not None
    ]
    if not produced:
        return WorkflowStatus.FAILED
    degraded = any(
        ctx.status_of(nid) in (NodeStatus.SKIPPED, NodeStatus.ERROR) for nid in graph.nodes
    )
    return WorkflowStatus.COMPLETED_WITH_SKIPS if degraded else WorkflowStatus.COMPLETED


def final_outputs(ctx: ExecutionContext) -> list[dict[str, Any]]:
    """Output nodes that produced a value, in node declaration order."""
    return [
        {"nodeId": n.id, "value": ctx.outputs.get(n.id)}
        for n in ctx.graph.nodes.values()
        if _is_output(ctx, n)
        and ctx.status_of(n.id) == NodeStatus.SUCCESS
        and ctx.outputs.get(n.id) is not None
    ]


def _is_output(ctx: ExecutionContext, node: Node) -> bool:
    spec = ctx.registry.get(node.spec_id)
    return spec is not None and spec.is_output
