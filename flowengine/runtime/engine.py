"""Engine facade — validates a workflow payload, runs it, redacts the result.

``run_flow`` returns a ``FlowResult``; ``stream_flow`` yields progress events
and finishes with one ``complete`` event.  Both raise/report
``ValidationError`` before any node starts; every other failure is folded
into a ``failed`` result.  Credential values never leave this module
unredacted.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

import httpx

from flowengine.compiler.ir import Graph
from flowengine.compiler.parser import parse_graph
from flowengine.compiler.validator import ValidationError, ensure_valid
from flowengine.config import settings
from flowengine.connectors.condition_judge import ConditionJudge, LLMConditionJudge
from flowengine.registry.node_registry import NodeRegistry, get_registry
from flowengine.runtime.events import ProgressEmitter, TraceCollector
from flowengine.runtime.executor_wrapper import RunFailureBreaker
from flowengine.runtime.resource_pools import ResourcePools
from flowengine.runtime.scheduler import Scheduler, final_outputs, workflow_status
from flowengine.runtime.state import ExecutionContext, FlowResult, NodeStatus, WorkflowStatus, now_ms
from flowengine.utils import run_cancel
from flowengine.utils.logger import ctx_run_id, ctx_workflow_id
from flowengine.utils.metrics import record_run_completed, record_run_rejected, record_run_started
from flowengine.utils.redaction import SecretRedactor, collect_credentials, redact_sensitive_data
from flowengine.utils.tracing import get_tracer

logger = logging.getLogger("flowengine.engine")
tracer = get_tracer("flowengine.engine")

EventCallback = Callable[[dict[str, Any]], None]

_STREAM_DONE = object()
# Runs whose streaming consumer went away; kept referenced until they drain.
_detached_runs: set[asyncio.Task] = set()


def _field(payload: Any, key: str, default: Any = None) -> Any:
    if isinstance(payload, Mapping):
        value = payload.get(key)
    else:
        value = getattr(payload, key, None)
    return default if value is None else value


def build_redactor(payload: Any, secrets: Iterable[str] | None = None) -> SecretRedactor:
    """Redactor for every credential in the payload's inputs plus *secrets*."""
    inputs = _field(payload, "inputs", {}) or {}
    found = collect_credentials(inputs, settings.CREDENTIAL_KEY_PREFIX)
    return SecretRedactor([*found, *(secrets or [])])


def prepare_graph(payload: Any, registry: NodeRegistry | None = None) -> Graph:
    """Parse and validate; raises ValidationError."""
    graph = parse_graph(_field(payload, "nodes", []), _field(payload, "edges", []))
    return ensure_valid(graph, registry)


def _redacted_error(exc: ValidationError, redactor: SecretRedactor) -> ValidationError:
    return ValidationError([redactor.redact_text(e) for e in exc.errors])


# ── Synchronous result ──────────────────────────────────────────


async def run_flow(
    payload: Any,
    *,
    secrets: Iterable[str] | None = None,
    judge: ConditionJudge | None = None,
    http_client: httpx.AsyncClient | None = None,
    on_event: EventCallback | None = None,
    run_id: str | None = None,
    registry: NodeRegistry | None = None,
) -> FlowResult:
    """Execute one workflow to completion.

    Parameters
    ----------
    payload : Mapping | pydantic model
        ``{nodes, edges, inputs, workflowId, metadata}``.
    secrets : Iterable[str] | None
        Extra values to redact besides the reserved credential inputs.
    judge : ConditionJudge | None
        Collaborator for ``humanCondition`` nodes; defaults to the LLM judge.
    http_client : httpx.AsyncClient | None
        Shared client for provider and HTTP nodes; one is created per run
        when omitted.
    on_event : callable | None
        Receives every (redacted) progress event.
    """
    run_id = run_id or str(uuid.uuid4())
    registry = registry or get_registry()
    redactor = build_redactor(payload, secrets)
    inputs = dict(_field(payload, "inputs", {}) or {})
    workflow_id = _field(payload, "workflowId")
    metadata = dict(_field(payload, "metadata", {}) or {})

    try:
        graph = prepare_graph(payload, registry)
    except ValidationError as exc:
        record_run_rejected()
        logger.warning("Run %s rejected: %d validation error(s)", run_id, len(exc.errors))
        raise _redacted_error(exc, redactor) from None

    emitter = ProgressEmitter(run_id)
    collector = TraceCollector(emitter)
    if on_event is not None:
        emitter.subscribe(lambda event: on_event(redactor.redact(event)))

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.NODE_DEFAULT_TIMEOUT_MS / 1000.0)
    ctx = ExecutionContext(
        run_id=run_id,
        graph=graph,
        registry=registry,
        emitter=emitter,
        inputs=inputs,
        workflow_id=workflow_id,
        metadata=metadata,
        http_client=client,
        judge=judge or LLMConditionJudge(client),
        pools=ResourcePools(),
        breaker=RunFailureBreaker(),
        credential_prefix=settings.CREDENTIAL_KEY_PREFIX,
    )

    run_cancel.register(run_id)
    run_token = ctx_run_id.set(run_id)
    wf_token = ctx_workflow_id.set(workflow_id)
    record_run_started()
    started = now_ms()
    clock = time.monotonic()
    error: str | None = None
    cancelled = False
    logger.info(
        "Run %s started: %d nodes, %d edges, caller=%s",
        run_id, len(graph.nodes), len(graph.edges), metadata.get("callerId"),
    )
    for node in graph.nodes.values():
        logger.debug("Node %s (%s) config: %s", node.id, node.spec_id, redact_sensitive_data(dict(node.config)))

    try:
        emitter.emit({
            "type": "run_started",
            "workflowId": workflow_id,
            "nodeCount": len(graph.nodes),
        })
        with tracer.start_as_current_span("flow run") as span:
            span.set_attribute("flowengine.run_id", run_id)
            span.set_attribute("flowengine.node_count", len(graph.nodes))
            await Scheduler(ctx).run()
            status = workflow_status(ctx)
            span.set_attribute("flowengine.workflow_status", status.value)
    except asyncio.CancelledError:
        run_cancel.mark_cancelled(run_id)
        raise
    except Exception as exc:
        logger.exception("Run %s failed inside the engine", run_id)
        status = WorkflowStatus.FAILED
        error = f"Engine error: {exc}"
    finally:
        cancelled = run_cancel.is_cancelled(run_id)
        run_cancel.deregister(run_id)
        if owns_client:
            await client.aclose()
        ctx_workflow_id.reset(wf_token)
        ctx_run_id.reset(run_token)

    duration = time.monotonic() - clock
    record_run_completed(duration, status.value)
    logger.info("Run %s finished: %s in %.2fs%s", run_id, status.value, duration, " (cancelled)" if cancelled else "")

    return _build_result(ctx, collector, redactor, status, error, cancelled, started)


def _build_result(
    ctx: ExecutionContext,
    collector: TraceCollector,
    redactor: SecretRedactor,
    status: WorkflowStatus,
    error: str | None,
    cancelled: bool,
    started: int,
) -> FlowResult:
    graph = ctx.graph
    outputs = {
        nid: ctx.outputs.get(nid)
        for nid in graph.nodes
        if ctx.status_of(nid) == NodeStatus.SUCCESS
    }
    traces = [
        dataclasses.replace(t, error=redactor.redact_text(t.error)) if t.error else t
        for t in collector.traces
    ]
    return FlowResult(
        run_id=ctx.run_id,
        workflow_id=ctx.workflow_id,
        workflow_status=status,
        node_status={nid: ctx.status_of(nid).value for nid in graph.nodes},
        outputs_by_node=redactor.redact(outputs),
        final_outputs=redactor.redact(final_outputs(ctx)),
        node_traces=traces,
        cancelled=cancelled,
        error=redactor.redact_text(error) if error else None,
        started_ms=started,
        ended_ms=now_ms(),
    )


# ── Streaming ───────────────────────────────────────────────────


async def stream_flow(
    payload: Any,
    *,
    secrets: Iterable[str] | None = None,
    judge: ConditionJudge | None = None,
    http_client: httpx.AsyncClient | None = None,
    run_id: str | None = None,
    registry: NodeRegistry | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield progress events, then ``{"type": "complete", ok, result, runId}``.

    Closing the iterator early cancels the run: no further node starts and
    the remainder is skipped in the background.
    """
    run_id = run_id or str(uuid.uuid4())
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(
        run_flow(
            payload,
            secrets=secrets,
            judge=judge,
            http_client=http_client,
            on_event=queue.put_nowait,
            run_id=run_id,
            registry=registry,
        ),
        name=f"run:{run_id}",
    )
    task.add_done_callback(lambda _: queue.put_nowait(_STREAM_DONE))

    try:
        while True:
            item = await queue.get()
            if item is _STREAM_DONE:
                break
            yield item

        try:
            result = task.result()
        except ValidationError as exc:
            yield {
                "type": "complete",
                "ok": False,
                "runId": run_id,
                "error": "Workflow validation failed",
                "errors": exc.errors,
            }
            return
        except Exception as exc:
            logger.exception("Streaming run %s failed", run_id)
            yield {
                "type": "complete",
                "ok": False,
                "runId": run_id,
                "error": build_redactor(payload, secrets).redact_text(str(exc)),
            }
            return

        yield {"type": "complete", "ok": result.ok, "result": result.to_dict(), "runId": run_id}
    finally:
        if not task.done():
            logger.info("Stream consumer for run %s went away; cancelling", run_id)
            run_cancel.mark_cancelled(run_id)
            _detached_runs.add(task)
            task.add_done_callback(_detached_runs.discard)


def cancel_run(run_id: str) -> bool:
    """Stop dispatching new nodes for *run_id*; False if the run is unknown."""
    return run_cancel.mark_cancelled(run_id)
