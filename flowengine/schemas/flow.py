"""Pydantic models for the flow run endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    caller_id: str | None = Field(default=None, alias="callerId")
    caller_type: str | None = Field(default=None, alias="callerType")


class FlowRunRequest(BaseModel):
    """Graph plus run inputs.  Node and edge shapes are checked by the parser."""

    model_config = ConfigDict(populate_by_name=True)

    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)
    workflow_id: str | None = Field(default=None, alias="workflowId")
    metadata: RunMetadata = Field(default_factory=RunMetadata)
    run_id: str | None = Field(default=None, alias="runId")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"run_id"})


class FinalOutput(BaseModel):
    nodeId: str
    value: Any = None


class NodeTraceOut(BaseModel):
    model_config = ConfigDict(extra="allow")

    nodeId: str
    specId: str
    status: str
    startMs: int
    endMs: int
    retries: int = 0
    error: str | None = None
    tokens: int | None = None
    model: str | None = None
    iteration: int | None = None
    loopId: str | None = None
    port: str | None = None


class FlowRunOut(BaseModel):
    runId: str
    workflowId: str | None = None
    workflowStatus: str
    nodeStatus: dict[str, str]
    outputsByNode: dict[str, Any]
    finalOutputs: list[FinalOutput]
    nodeTraces: list[NodeTraceOut]
    cancelled: bool = False
    startedMs: int
    endedMs: int
    error: str | None = None


class ValidationErrorOut(BaseModel):
    message: str
    errors: list[str]


class CancelOut(BaseModel):
    run_id: str
    cancelled: bool
