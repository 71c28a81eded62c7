"""Run state — node statuses, execution context, traces and the final result."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    import httpx

    from flowengine.compiler.ir import Graph, Node
    from flowengine.connectors.condition_judge import ConditionJudge
    from flowengine.registry.node_registry import NodeRegistry
    from flowengine.runtime.events import ProgressEmitter
    from flowengine.runtime.executor_wrapper import RunFailureBreaker
    from flowengine.runtime.resource_pools import ResourcePools


def now_ms() -> int:
    return int(time.time() * 1000)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.ERROR, NodeStatus.SKIPPED)


class WorkflowStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_SKIPS = "completed_with_skips"
    FAILED = "failed"


# ── Executor contract ───────────────────────────────────────────


@dataclass
class NodeResult:
    """What an executor returns when it needs more than a bare value."""

    value: Any = None
    port: str | None = None  # condition nodes: "true" | "false"
    tokens: int | None = None
    model: str | None = None
    # Loop nodes report per-body-node outcomes for the enclosing scheduler.
    body_statuses: dict[str, "NodeStatus"] | None = None
    body_outputs: dict[str, list[Any]] | None = None


@dataclass
class NodeInputs:
    """Values delivered to a node, in edge declaration order."""

    values: list[Any] = field(default_factory=list)
    by_port: dict[str, Any] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)

    @property
    def first(self) -> Any:
        return self.values[0] if self.values else None

    def __len__(self) -> int:
        return len(self.values)

    def __bool__(self) -> bool:
        return bool(self.values)


# ── Traces & result ─────────────────────────────────────────────


@dataclass
class NodeTrace:
    node_id: str
    spec_id: str
    status: str
    start_ms: int
    end_ms: int
    error: str | None = None
    retries: int = 0
    tokens: int | None = None
    model: str | None = None
    iteration: int | None = None
    loop_id: str | None = None
    port: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "nodeId": self.node_id,
            "specId": self.spec_id,
            "status": self.status,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "retries": self.retries,
        }
        for key, value in (
            ("error", self.error),
            ("tokens", self.tokens),
            ("model", self.model),
            ("iteration", self.iteration),
            ("loopId", self.loop_id),
            ("port", self.port),
        ):
            if value is not None:
                out[key] = value
        return out


@dataclass
class FlowResult:
    run_id: str
    workflow_id: str | None
    workflow_status: WorkflowStatus
    node_status: dict[str, str] = field(default_factory=dict)
    outputs_by_node: dict[str, Any] = field(default_factory=dict)
    final_outputs: list[dict[str, Any]] = field(default_factory=list)
    node_traces: list[NodeTrace] = field(default_factory=list)
    cancelled: bool = False
    error: str | None = None
    started_ms: int = 0
    ended_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.workflow_status != WorkflowStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "runId": self.run_id,
            "workflowId": self.workflow_id,
            "workflowStatus": self.workflow_status.value,
            "nodeStatus": dict(self.node_status),
            "outputsByNode": dict(self.outputs_by_node),
            "finalOutputs": list(self.final_outputs),
            "nodeTraces": [t.to_dict() for t in self.node_traces],
            "cancelled": self.cancelled,
            "startedMs": self.started_ms,
            "endedMs": self.ended_ms,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


# ── Execution context ───────────────────────────────────────────


@dataclass
class ExecutionContext:
    """Everything one scheduler pass needs.

    ``inputs`` is read-only.  ``outputs`` / ``statuses`` / ``ports`` are
    written only by the scheduler that owns the node, once per node.
    """

    run_id: str
    graph: "Graph"
    registry: "NodeRegistry"
    emitter: "ProgressEmitter"
    inputs: Mapping[str, Any] = field(default_factory=dict)
    workflow_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    statuses: dict[str, NodeStatus] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    ports: dict[str, str | None] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    scope: Mapping[str, Any] = field(default_factory=dict)
    iteration: int | None = None
    loop_id: str | None = None
    http_client: "httpx.AsyncClient | None" = None
    judge: "ConditionJudge | None" = None
    pools: "ResourcePools | None" = None
    breaker: "RunFailureBreaker | None" = None
    credential_prefix: str = "__api_key_"
    depth: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.inputs, MappingProxyType):
            self.inputs = MappingProxyType(dict(self.inputs))
        if not isinstance(self.scope, MappingProxyType):
            self.scope = MappingProxyType(dict(self.scope))

    def credential(self, node_id: str) -> str | None:
        value = self.inputs.get(f"{self.credential_prefix}{node_id}")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def public_inputs(self) -> dict[str, Any]:
        """Workflow inputs without reserved credential entries."""
        return {k: v for k, v in self.inputs.items() if not str(k).startswith(self.credential_prefix)}

    def status_of(self, node_id: str) -> NodeStatus:
        return self.statuses.get(node_id, NodeStatus.PENDING)

    def record(
        self,
        node_id: str,
        status: NodeStatus,
        value: Any = None,
        port: str | None = None,
        error: str | None = None,
    ) -> None:
        """Store a node's terminal outcome.  A node is recorded at most once."""
        if self.status_of(node_id).terminal:
            raise RuntimeError(f"Node '{node_id}' already has a terminal status")
        self.statuses[node_id] = status
        if status == NodeStatus.SUCCESS:
            self.outputs[node_id] = value
            self.ports[node_id] = port
        if error is not None:
            self.errors[node_id] = error

    def child(
        self,
        *,
        loop_id: str,
        iteration: int,
        seeds: Mapping[str, Any],
        scope: Mapping[str, Any],
        members: set[str],
        emitter: "ProgressEmitter",
    ) -> "ExecutionContext":
        """Context for one loop iteration: parent outcomes are visible,
        body *members* start pending, *seeds* act as finished producers."""
        statuses = {k: v for k, v in self.statuses.items() if k not in members}
        outputs = {k: v for k, v in self.outputs.items() if k not in members}
        ports = {k: v for k, v in self.ports.items() if k not in members}
        for node_id, value in seeds.items():
            statuses[node_id] = NodeStatus.SUCCESS
            outputs[node_id] = value
            ports[node_id] = None
        merged_scope = dict(self.scope)
        merged_scope.update(scope)
        return ExecutionContext(
            run_id=self.run_id,
            graph=self.graph,
            registry=self.registry,
            emitter=emitter,
            inputs=self.inputs,
            workflow_id=self.workflow_id,
            metadata=self.metadata,
            statuses=statuses,
            outputs=outputs,
            ports=ports,
            scope=merged_scope,
            iteration=iteration,
            loop_id=loop_id,
            http_client=self.http_client,
            judge=self.judge,
            pools=self.pools,
            breaker=self.breaker,
            credential_prefix=self.credential_prefix,
            depth=self.depth + 1,
        )
