"""Node registry — maps spec ids to executors and their per-type defaults.

Executors register themselves with the ``node_executor`` decorator::

    @node_executor("json-parse", config_model=JsonParseConfig, default_retries=0)
    async def execute_json_parse(node, inputs, ctx):
        ...

The scheduler only talks to ``NodeSpec``; adding a node type never touches it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

logger = logging.getLogger("flowengine.registry.node")

# Builder spec ids that predate the provider-neutral names.
SPEC_ALIASES: dict[str, str] = {
    "openai-chat": "ai-chat",
    "openai-embeddings": "ai-embeddings",
    "openai-image": "ai-image",
}

RESOURCE_CLASSES = ("llm", "http", "image", "cpu")

Executor = Callable[..., Awaitable[Any]]


def canonical_spec_id(spec_id: str) -> str:
    return SPEC_ALIASES.get(spec_id, spec_id)


@dataclass(frozen=True)
class NodeSpec:
    spec_id: str
    execute: Executor
    # Tolerant nodes run on whatever subset of inputs was delivered.
    tolerant: bool = False
    # Concurrency pool; None means the node neither takes a pool slot nor a
    # global parallelism slot (loop nodes wait on their own body tasks).
    resource_class: str | None = "cpu"
    default_retries: int = 0
    default_timeout_ms: int | None = None
    # Optional hook computing a per-node default deadline from its config.
    timeout_hint: Callable[[Any], int | None] | None = None
    # Optional hook capping retries for a node (side-effecting requests).
    retry_cap: Callable[[Any], int | None] | None = None
    # Port a failed node's fallbackValue is emitted on, for nodes that route by port.
    fallback_port: Callable[[Any], str] | None = None
    side_effects: bool = False
    calls_provider: bool = False
    config_model: type[BaseModel] | None = None
    owns_scope: bool = False
    is_output: bool = False
    description: str = ""

    def retries_for(self, node) -> int:
        configured = node.config.get("retries")
        if isinstance(configured, int) and not isinstance(configured, bool) and configured >= 0:
            retries = configured
        else:
            retries = self.default_retries
        if self.retry_cap is not None:
            cap = self.retry_cap(node)
            if cap is not None:
                retries = min(retries, cap)
        return retries

    def timeout_ms_for(self, node) -> int | None:
        configured = node.config.get("timeout")
        if isinstance(configured, (int, float)) and not isinstance(configured, bool) and configured > 0:
            return int(configured)
        if self.timeout_hint is not None:
            hinted = self.timeout_hint(node)
            if hinted is not None:
                return hinted
        return self.default_timeout_ms

    def validate_config(self, config: dict[str, Any]) -> BaseModel | None:
        """Raise pydantic.ValidationError when *config* does not fit the model."""
        if self.config_model is None:
            return None
        return self.config_model.model_validate(config)


class NodeRegistry:
    def __init__(self) -> None:
        self._specs: dict[str, NodeSpec] = {}

    def register(self, spec: NodeSpec) -> NodeSpec:
        if spec.resource_class is not None and spec.resource_class not in RESOURCE_CLASSES:
            raise ValueError(f"Unknown resource class '{spec.resource_class}' for '{spec.spec_id}'")
        if spec.spec_id in self._specs:
            logger.debug("Replacing node spec %s", spec.spec_id)
        self._specs[spec.spec_id] = spec
        return spec

    def get(self, spec_id: str) -> NodeSpec | None:
        return self._specs.get(canonical_spec_id(spec_id))

    def __contains__(self, spec_id: object) -> bool:
        return isinstance(spec_id, str) and canonical_spec_id(spec_id) in self._specs

    def spec_ids(self) -> list[str]:
        return sorted(self._specs)

    def copy(self) -> "NodeRegistry":
        clone = NodeRegistry()
        clone._specs = dict(self._specs)
        return clone


_default_registry = NodeRegistry()


def node_executor(spec_id: str, **options: Any) -> Callable[[Executor], Executor]:
    """Decorator registering an executor coroutine in the default registry."""

    def decorator(fn: Executor) -> Executor:
        _default_registry.register(NodeSpec(spec_id=spec_id, execute=fn, **options))
        return fn

    return decorator


def get_registry() -> NodeRegistry:
    """Return the default registry with every built-in executor loaded."""
    # Importing the module runs its @node_executor decorators.
    import flowengine.runtime.node_executors  # noqa: F401

    return _default_registry
