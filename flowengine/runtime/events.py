"""Progress emitter and trace collector.

The scheduler reports every status transition to a ``ProgressEmitter``.
Subscribers are plain callables taking one event dict: the trace collector,
the streaming response queue, an optional caller hook.  Nothing here is
global; each run builds its own emitter.

Event shapes::

    {"type": "run_started", "runId", "workflowId", "nodeCount", "ts"}
    {"type": "node_status", "runId", "nodeId", "specId", "status", "ts",
     "startMs"?, "endMs"?, "retries"?, "error"?, "port"?, "tokens"?,
     "model"?, "iteration"?, "loopId"?}
    {"type": "token", "runId", "nodeId", "delta", "iteration"?, "loopId"?}
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from flowengine.runtime.state import NodeStatus, NodeTrace, now_ms

logger = logging.getLogger("flowengine.runtime.events")

Subscriber = Callable[[dict[str, Any]], None]

_TERMINAL = {s.value for s in NodeStatus if s.terminal}


class ProgressEmitter:
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def emit(self, event: dict[str, Any]) -> None:
        event.setdefault("runId", self.run_id)
        event.setdefault("ts", now_ms())
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Progress subscriber failed for event %s", event.get("type"))

    def node_status(self, node_id: str, spec_id: str, status: NodeStatus, **fields: Any) -> None:
        event: dict[str, Any] = {
            "type": "node_status",
            "nodeId": node_id,
            "specId": spec_id,
            "status": status.value,
        }
        event.update({k: v for k, v in fields.items() if v is not None})
        self.emit(event)

    def token(self, node_id: str, delta: str) -> None:
        self.emit({"type": "token", "nodeId": node_id, "delta": delta})


class ScopedEmitter(ProgressEmitter):
    """Forwards events to a parent emitter, tagged with loop iteration info.

    Tags are only added when absent, so nested loops keep the innermost tag.
    """

    def __init__(self, parent: ProgressEmitter, loop_id: str, iteration: int) -> None:
        super().__init__(parent.run_id)
        self.parent = parent
        self.loop_id = loop_id
        self.iteration = iteration

    def emit(self, event: dict[str, Any]) -> None:
        event.setdefault("iteration", self.iteration)
        event.setdefault("loopId", self.loop_id)
        super().emit(event)
        self.parent.emit(event)


class TraceCollector:
    """Appends one NodeTrace per terminal node_status event, in arrival order."""

    def __init__(self, emitter: ProgressEmitter | None = None) -> None:
        self.traces: list[NodeTrace] = []
        if emitter is not None:
            emitter.subscribe(self)

    def __call__(self, event: dict[str, Any]) -> None:
        if event.get("type") != "node_status" or event.get("status") not in _TERMINAL:
            return
        end = event.get("endMs") or event.get("ts") or now_ms()
        self.traces.append(
            NodeTrace(
                node_id=event["nodeId"],
                spec_id=event.get("specId", ""),
                status=event["status"],
                start_ms=event.get("startMs") or end,
                end_ms=end,
                error=event.get("error"),
                retries=event.get("retries") or 0,
                tokens=event.get("tokens"),
                model=event.get("model"),
                iteration=event.get("iteration"),
                loop_id=event.get("loopId"),
                port=event.get("port"),
            )
        )
