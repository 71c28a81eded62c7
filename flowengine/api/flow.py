"""Flow API router — run a workflow synchronously or as a live event stream."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sse_starlette.sse import EventSourceResponse

from flowengine.compiler.validator import ValidationError
from flowengine.runtime.engine import cancel_run, run_flow, stream_flow
from flowengine.schemas.flow import CancelOut, FlowRunOut, FlowRunRequest, ValidationErrorOut

logger = logging.getLogger("flowengine.api.flow")

router = APIRouter()


def _shared_client(request: Request):
    return getattr(request.app.state, "http_client", None)


@router.post(
    "/run",
    response_model=FlowRunOut,
    responses={422: {"model": ValidationErrorOut}},
)
async def run_workflow(body: FlowRunRequest, request: Request):
    try:
        result = await run_flow(
            body.to_payload(),
            http_client=_shared_client(request),
            run_id=body.run_id,
        )
    except ValidationError as exc:
        return JSONResponse(
            status_code=422,
            content={"message": "Workflow validation failed", "errors": exc.errors},
        )
    return result.to_dict()


async def _events(body: FlowRunRequest, request: Request) -> AsyncIterator[dict[str, Any]]:
    events = stream_flow(
        body.to_payload(),
        http_client=_shared_client(request),
        run_id=body.run_id or str(uuid.uuid4()),
    )
    try:
        async for event in events:
            if await request.is_disconnected():
                logger.info("Client disconnected from run %s", event.get("runId"))
                break
            yield event
    finally:
        await events.aclose()


@router.post("/run/stream")
async def run_workflow_stream(body: FlowRunRequest, request: Request):
    """Newline-delimited JSON: one progress event per line, ``complete`` last."""

    async def ndjson():
        async for event in _events(body, request):
            yield json.dumps(event, default=str) + "\n"

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


@router.post("/run/events")
async def run_workflow_sse(body: FlowRunRequest, request: Request):
    """Same events as ``/run/stream``, framed as Server-Sent Events."""

    async def event_generator():
        async for event in _events(body, request):
            yield {"event": event.get("type", "message"), "data": json.dumps(event, default=str)}

    return EventSourceResponse(event_generator())


@router.post("/runs/{run_id}/cancel", response_model=CancelOut)
async def cancel_workflow_run(run_id: str):
    cancelled = cancel_run(run_id)
    if not cancelled:
        logger.info("Cancel requested for unknown or finished run %s", run_id)
    return CancelOut(run_id=run_id, cancelled=cancelled)
