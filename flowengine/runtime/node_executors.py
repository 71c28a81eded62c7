"""Built-in node executors — one coroutine per spec id.

Every executor has the signature ``async (node, inputs, ctx)`` and returns
either a bare value or a ``NodeResult``.  Raising fails the attempt; the
retry wrapper decides whether another attempt follows.
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
from typing import Any

from flowengine.config import settings
from flowengine.compiler.ir import LOOP_END_SPEC_ID, LOOP_SPEC_ID, Node
from flowengine.connectors.http_client import GuardedHttpClient, HttpRequest, exceeds_json_depth, MAX_JSON_DEPTH
from flowengine.connectors.llm_client import LLMClient
from flowengine.registry.node_registry import node_executor
from flowengine.runtime.errors import LoopIterationError, MissingCredentialError, NodeExecutionError
from flowengine.runtime.events import ScopedEmitter
from flowengine.runtime.scheduler import Scheduler
from flowengine.runtime.state import ExecutionContext, NodeInputs, NodeResult, NodeStatus
from flowengine.schemas.node_configs import (
    ChatConfig,
    ConditionConfig,
    DelayConfig,
    EmbeddingsConfig,
    HttpRequestConfig,
    ImageConfig,
    InputConfig,
    JsonParseConfig,
    LoopConfig,
    LoopEndConfig,
    MapConfig,
    MergeConfig,
    OutputConfig,
    TemplateConfig,
)
from flowengine.templating.engine import render_template_str, stringify
from flowengine.templating.expressions import apply_operator, evaluate_condition, is_truthy
from flowengine.utils import run_cancel
from flowengine.utils.host_policy import split_hosts
from flowengine.utils.logger import ctx_iteration
from flowengine.utils.metrics import record_provider_tokens

logger = logging.getLogger("flowengine.runtime.executors")

_SIDE_EFFECT_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


# ── Helpers ─────────────────────────────────────────────────────


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def template_context(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> dict[str, Any]:
    """Variables visible to ``{{name}}`` placeholders, lowest precedence first:
    workflow inputs, loop scope, ``config.values``, delivered inputs."""
    values: dict[str, Any] = dict(ctx.public_inputs())
    values.update(ctx.scope)
    configured = node.config.get("values")
    if isinstance(configured, dict):
        values.update(configured)
    if len(inputs) == 1 and isinstance(inputs.first, dict):
        values.update(inputs.first)
    if inputs:
        values["input"] = inputs.first
        values["inputs"] = list(inputs.values)
    values.update(inputs.by_port)
    return values


def _require_credential(node: Node, ctx: ExecutionContext) -> str:
    api_key = ctx.credential(node.id)
    if api_key is None:
        raise MissingCredentialError(node.id)
    return api_key


def _llm(api_key: str, ctx: ExecutionContext) -> LLMClient:
    return LLMClient(api_key, http_client=ctx.http_client)


# ── Input / output ──────────────────────────────────────────────


def _coerce_input(value: Any, input_type: str | None, node_id: str) -> Any:
    if value is None or not input_type:
        return value
    kind = input_type.lower()
    try:
        if kind == "number":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            number = float(str(value).strip())
            return int(number) if number.is_integer() else number
        if kind in ("json", "object"):
            return json.loads(value) if isinstance(value, str) else value
        if kind in ("boolean", "bool", "checkbox"):
            return is_truthy(value)
    except ValueError as exc:
        raise NodeExecutionError(
            f"Input '{node_id}' is not a valid {kind}: {exc}", retryable=False
        ) from exc
    if kind in ("text", "textarea", "string"):
        return value if isinstance(value, str) else stringify(value)
    return value


@node_executor("input", config_model=InputConfig, description="Workflow entry value")
async def execute_input(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    value = ctx.inputs.get(node.id)
    name = node.config.get("name")
    if value is None and name:
        value = ctx.inputs.get(name)
    if value is None:
        for key in ("value", "text", "defaultValue"):
            if node.config.get(key) is not None:
                value = node.config[key]
                break
    if value is None and inputs:
        value = inputs.first
    if value is None:
        if node.config.get("required", True):
            raise NodeExecutionError(f"Required input '{name or node.id}' was not provided", retryable=False)
        return None
    return _coerce_input(value, node.config.get("inputType"), node.id)


def _chat_text(value: Any) -> Any:
    if isinstance(value, dict):
        for key in ("content", "text"):
            if isinstance(value.get(key), str):
                return value[key]
    return value


def format_output(value: Any, fmt: str) -> Any:
    """Render one value in an output node's format."""
    if fmt == "text":
        value = _chat_text(value)
        return value if isinstance(value, str) else json.dumps(value, indent=2, default=str)
    if fmt == "markdown":
        value = _chat_text(value)
        if isinstance(value, str):
            return value
        return "```json\n" + json.dumps(value, indent=2, default=str) + "\n```"
    if fmt == "html":
        value = _chat_text(value)
        if isinstance(value, str):
            return html.escape(value)
        return "<pre>" + html.escape(json.dumps(value, indent=2, default=str)) + "</pre>"
    return value


@node_executor("output", config_model=OutputConfig, tolerant=True, is_output=True, description="Workflow result")
async def execute_output(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    fmt = OutputConfig.model_validate(dict(node.config)).format
    valid = [v for v in inputs.values if v is not None]
    if not valid:
        return None
    if len(valid) == 1:
        return format_output(valid[0], fmt)
    if fmt == "text":
        return "\n".join(format_output(v, fmt) for v in valid)
    return {"results": valid, "count": len(valid)}


# ── Merging ─────────────────────────────────────────────────────


@node_executor("merge", config_model=MergeConfig, tolerant=True, description="Combine upstream values")
async def execute_merge(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    valid = [v for v in inputs.values if not _is_blank(v)]
    if not valid:
        return None
    if all(isinstance(v, str) for v in valid):
        separator = node.config.get("separator")
        return (" " if separator is None else str(separator)).join(valid)
    if all(isinstance(v, list) for v in valid):
        return [item for v in valid for item in v]
    if all(isinstance(v, dict) for v in valid):
        merged: dict[str, Any] = {}
        for v in valid:
            merged.update(v)
        return merged
    return valid


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


@node_executor("merge-json", config_model=MergeConfig, tolerant=True, description="Deep-merge JSON objects")
async def execute_merge_json(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for source, value in zip(inputs.sources, inputs.values):
        if value is None:
            continue
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as exc:
                raise NodeExecutionError(
                    f"merge-json input from '{source}' is not valid JSON: {exc}", retryable=False
                ) from exc
        if not isinstance(value, dict):
            raise NodeExecutionError(
                f"merge-json input from '{source}' is {type(value).__name__}, expected an object",
                retryable=False,
            )
        merged = deep_merge(merged, value)
    return merged


# ── Branching & timing ──────────────────────────────────────────


def _condition_fallback_port(value: Any) -> str:
    return "true" if is_truthy(value) else "false"


@node_executor(
    "condition",
    config_model=ConditionConfig,
    fallback_port=_condition_fallback_port,
    description="Route on a true/false port",
)
async def execute_condition(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> NodeResult:
    value = inputs.first
    human = node.config.get("humanCondition")
    expression = node.config.get("expression")

    if isinstance(human, str) and human.strip():
        result = await _judge(node, human.strip(), value, ctx)
    elif isinstance(expression, str) and expression.strip():
        result = evaluate_condition(expression, template_context(node, inputs, ctx))
    else:
        result = apply_operator(node.config.get("operator"), value, node.config.get("compareValue"))

    return NodeResult(value=value, port="true" if result else "false")


async def _judge(node: Node, condition: str, value: Any, ctx: ExecutionContext) -> bool:
    if ctx.judge is None:
        logger.warning("Condition %s has a humanCondition but no judge is configured; using truthiness", node.id)
        return is_truthy(value)
    try:
        verdict = await ctx.judge.judge(condition, value, api_key=ctx.credential(node.id))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("Condition judge failed for %s, falling back to truthiness: %s", node.id, exc)
        return is_truthy(value)
    logger.info("Condition %s judged %s (confidence %.2f)", node.id, verdict.result, verdict.confidence)
    return bool(verdict.result)


def _delay_ms(node: Node) -> float:
    duration = node.config.get("duration")
    try:
        duration = float(1000 if duration is None else duration)
    except (TypeError, ValueError):
        duration = 1000.0
    return max(0.0, min(duration, float(settings.DELAY_MAX_MS)))


def _delay_deadline(node: Node) -> int:
    return int(_delay_ms(node)) + settings.NODE_DEFAULT_TIMEOUT_MS


@node_executor("delay", config_model=DelayConfig, timeout_hint=_delay_deadline, description="Wait, then forward")
async def execute_delay(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    await asyncio.sleep(_delay_ms(node) / 1000.0)
    return inputs.first


# ── Loops ───────────────────────────────────────────────────────


def _iteration_limit(node: Node) -> int:
    configured = node.config.get("maxIterations")
    if isinstance(configured, int) and not isinstance(configured, bool) and configured >= 0:
        return min(configured, settings.LOOP_MAX_ITERATIONS)
    return settings.LOOP_MAX_ITERATIONS


def _loop_items(node: Node, inputs: NodeInputs) -> list[Any]:
    items = inputs.first if inputs and inputs.first is not None else node.config.get("items")
    if isinstance(items, str):
        try:
            items = json.loads(items)
        except ValueError:
            pass
    if isinstance(items, tuple):
        items = list(items)
    if not isinstance(items, list):
        raise NodeExecutionError("Loop input must be an array", retryable=False)
    return items


def _aggregate_body(per_node: dict[str, list[tuple[NodeStatus, Any]]]) -> tuple[dict, dict]:
    statuses: dict[str, NodeStatus] = {}
    outputs: dict[str, list[Any]] = {}
    for node_id, runs in per_node.items():
        seen = {status for status, _ in runs}
        if NodeStatus.ERROR in seen:
            statuses[node_id] = NodeStatus.ERROR
        elif NodeStatus.SUCCESS in seen:
            statuses[node_id] = NodeStatus.SUCCESS
        else:
            statuses[node_id] = NodeStatus.SKIPPED
        outputs[node_id] = [value for _, value in runs]
    return statuses, outputs


@node_executor(
    LOOP_SPEC_ID,
    config_model=LoopConfig,
    resource_class=None,
    owns_scope=True,
    description="Run the loop body once per array element",
)
async def execute_loop(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> NodeResult:
    elements = _loop_items(node, inputs)[: _iteration_limit(node)]
    scope = ctx.graph.loop_scopes.get(node.id)
    if scope is None or scope.end_id is None:
        return NodeResult(value=list(elements))

    continue_on_error = bool(node.config.get("continueOnError"))
    results: list[Any] = []
    per_node: dict[str, list[tuple[NodeStatus, Any]]] = {}
    count = len(elements)

    for index, element in enumerate(elements):
        if run_cancel.is_cancelled(ctx.run_id):
            raise run_cancel.RunCancelledError(f"Run cancelled before iteration {index}")

        child = ctx.child(
            loop_id=node.id,
            iteration=index,
            seeds={node.id: element},
            scope={
                "item": element,
                "index": index,
                "loop": {"id": node.id, "index": index, "count": count,
                         "first": index == 0, "last": index == count - 1},
            },
            members=set(scope.body),
            emitter=ScopedEmitter(ctx.emitter, node.id, index),
        )
        token = ctx_iteration.set(index)
        try:
            await Scheduler(child, members=scope.body).run()
        finally:
            ctx_iteration.reset(token)

        for nid in scope.inner:
            per_node.setdefault(nid, []).append((child.status_of(nid), child.outputs.get(nid)))

        failed = sorted(nid for nid in scope.body if child.status_of(nid) == NodeStatus.ERROR)
        if failed:
            if not continue_on_error:
                statuses, outputs = _aggregate_body(per_node)
                partial = NodeResult(body_statuses=statuses, body_outputs=outputs)
                raise LoopIterationError(node.id, index, failed, partial=partial)
            logger.warning("Loop %s iteration %d failed at %s; continuing", node.id, index, failed)
            results.append(None)
            continue

        if child.status_of(scope.end_id) == NodeStatus.SUCCESS:
            results.append(child.outputs.get(scope.end_id))
        else:
            results.append(None)

    statuses, outputs = _aggregate_body(per_node)
    return NodeResult(value=results, body_statuses=statuses, body_outputs=outputs)


@node_executor(LOOP_END_SPEC_ID, config_model=LoopEndConfig, resource_class=None, description="Loop body boundary")
async def execute_loop_end(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    return inputs.first


# ── Text & data ─────────────────────────────────────────────────


@node_executor("template", config_model=TemplateConfig, description="Fill {{placeholders}}")
async def execute_template(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> str:
    template = node.config.get("template") or ""
    return render_template_str(str(template), template_context(node, inputs, ctx))


@node_executor("map", config_model=MapConfig, description="Apply a template to each element")
async def execute_map(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> list[str]:
    items = inputs.first
    if isinstance(items, tuple):
        items = list(items)
    if not isinstance(items, list):
        raise NodeExecutionError("Map input must be an array", retryable=False)
    template = str(node.config.get("template") or "")
    base = template_context(node, inputs, ctx)
    rendered: list[str] = []
    for index, item in enumerate(items):
        rendered.append(render_template_str(template, {**base, "item": item, "index": index}))
    return rendered


@node_executor("json-parse", config_model=JsonParseConfig, description="Parse a JSON string")
async def execute_json_parse(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> Any:
    value = inputs.first
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except ValueError as exc:
        raise NodeExecutionError(f"Invalid JSON: {exc}", retryable=False) from exc
    if exceeds_json_depth(parsed):
        raise NodeExecutionError(f"JSON is nested deeper than {MAX_JSON_DEPTH} levels", retryable=False)
    return parsed


# ── HTTP ────────────────────────────────────────────────────────


def _http_method(node: Node) -> str:
    return str(node.config.get("method") or "GET").upper()


def _http_retry_cap(node: Node) -> int | None:
    if _http_method(node) in _SIDE_EFFECT_METHODS and not node.config.get("idempotencyKey"):
        return 0
    return None


def build_http_request(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> HttpRequest:
    first = inputs.first
    incoming = first if isinstance(first, dict) else {}
    variables = template_context(node, inputs, ctx)

    if isinstance(first, str) and first.strip():
        url = first.strip()
    elif isinstance(incoming.get("url"), str) and incoming["url"].strip():
        url = incoming["url"].strip()
    else:
        url = render_template_str(str(node.config.get("url") or ""), variables)
    if not url:
        raise NodeExecutionError("http-request needs a URL (input or config.url)", retryable=False)

    headers = dict(node.config.get("headers") or {})
    if isinstance(incoming.get("headers"), dict):
        headers.update(incoming["headers"])
    headers = {str(k): render_template_str(str(v), variables) for k, v in headers.items()}

    body = incoming["body"] if "body" in incoming else node.config.get("body")
    if isinstance(body, str):
        body = render_template_str(body, variables)

    method = str(incoming.get("method") or _http_method(node)).upper()
    return HttpRequest(
        url=url,
        method=method,
        headers=headers,
        body=body,
        timeout_ms=node.config.get("timeout") or settings.NODE_DEFAULT_TIMEOUT_MS,
        follow_redirects=node.config.get("followRedirects", True) is not False,
        allow_only=split_hosts(node.config.get("allowOnly")),
        deny_hosts=split_hosts(node.config.get("denyHosts")),
        idempotency_key=node.config.get("idempotencyKey"),
    )


@node_executor(
    "http-request",
    config_model=HttpRequestConfig,
    resource_class="http",
    default_retries=2,
    default_timeout_ms=settings.NODE_DEFAULT_TIMEOUT_MS,
    retry_cap=_http_retry_cap,
    side_effects=True,
    description="Guarded outbound HTTP call",
)
async def execute_http_request(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> dict[str, Any]:
    request = build_http_request(node, inputs, ctx)
    return await GuardedHttpClient(ctx.http_client).send(request)


# ── AI providers ────────────────────────────────────────────────


def _chat_messages(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> list[dict[str, Any]]:
    first = inputs.first
    if isinstance(first, list) and first and all(isinstance(m, dict) for m in first):
        return list(first)
    if isinstance(first, str) and first.strip():
        prompt = first
    elif node.config.get("prompt"):
        prompt = render_template_str(str(node.config["prompt"]), template_context(node, inputs, ctx))
    elif first is not None:
        prompt = stringify(first)
    else:
        raise NodeExecutionError("Prompt or messages array required", retryable=False)
    messages: list[dict[str, Any]] = []
    system = node.config.get("system")
    if isinstance(system, str) and system.strip():
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


@node_executor(
    "ai-chat",
    config_model=ChatConfig,
    resource_class="llm",
    default_retries=2,
    default_timeout_ms=30_000,
    calls_provider=True,
    description="Chat completion",
)
async def execute_chat(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> NodeResult:
    api_key = _require_credential(node, ctx)
    messages = _chat_messages(node, inputs, ctx)
    model = node.config.get("model") or settings.LLM_DEFAULT_MODEL
    temperature = node.config.get("temperature")
    max_tokens = node.config.get("maxTokens")
    client = _llm(api_key, ctx)

    if node.config.get("stream"):
        reply = await client.chat_stream(
            messages,
            model=model,
            on_delta=lambda delta: ctx.emitter.token(node.id, delta),
            temperature=0.7 if temperature is None else temperature,
            max_tokens=max_tokens or 2000,
        )
    else:
        reply = await client.chat(
            messages,
            model=model,
            temperature=0.7 if temperature is None else temperature,
            max_tokens=max_tokens or 2000,
        )

    tokens = reply["usage"]["total_tokens"] or None
    if tokens:
        record_provider_tokens(reply["model"], tokens)
    return NodeResult(value=reply["text"], tokens=tokens, model=reply["model"])


@node_executor(
    "ai-embeddings",
    config_model=EmbeddingsConfig,
    resource_class="llm",
    default_retries=2,
    default_timeout_ms=15_000,
    calls_provider=True,
    description="Text embedding vector",
)
async def execute_embeddings(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> NodeResult:
    api_key = _require_credential(node, ctx)
    first = inputs.first
    if isinstance(first, str) and first.strip():
        text = first
    elif node.config.get("text"):
        text = render_template_str(str(node.config["text"]), template_context(node, inputs, ctx))
    elif first is not None:
        text = stringify(first)
    else:
        raise NodeExecutionError("Text input required for embeddings", retryable=False)

    model = node.config.get("model") or settings.LLM_EMBEDDINGS_MODEL
    reply = await _llm(api_key, ctx).embeddings(text, model=model)
    tokens = reply["usage"]["total_tokens"] or None
    if tokens:
        record_provider_tokens(reply["model"], tokens)
    return NodeResult(value=reply["vector"], tokens=tokens, model=reply["model"])


@node_executor(
    "ai-image",
    config_model=ImageConfig,
    resource_class="image",
    default_retries=2,
    default_timeout_ms=60_000,
    calls_provider=True,
    description="Image generation",
)
async def execute_image(node: Node, inputs: NodeInputs, ctx: ExecutionContext) -> NodeResult:
    api_key = _require_credential(node, ctx)
    first = inputs.first
    if isinstance(first, str) and first.strip():
        prompt = first
    elif node.config.get("prompt"):
        prompt = render_template_str(str(node.config["prompt"]), template_context(node, inputs, ctx))
    else:
        raise NodeExecutionError("Prompt required for image generation", retryable=False)

    model = node.config.get("model") or settings.LLM_IMAGE_MODEL
    reply = await _llm(api_key, ctx).image(
        prompt,
        model=model,
        size=node.config.get("size") or "1024x1024",
        quality=node.config.get("quality") or "standard",
    )
    return NodeResult(value=reply["url"], model=reply["model"])
