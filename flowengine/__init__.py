"""flowengine — executes workflow graphs of typed processing nodes.

    from flowengine import run_flow

    result = await run_flow({"nodes": [...], "edges": [...], "inputs": {...}})
"""

from flowengine.compiler.validator import ValidationError
from flowengine.runtime.engine import cancel_run, run_flow, stream_flow
from flowengine.runtime.state import FlowResult

__all__ = ["FlowResult", "ValidationError", "cancel_run", "run_flow", "stream_flow"]
