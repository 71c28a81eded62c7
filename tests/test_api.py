"""HTTP surface: run, stream, cancel and observability endpoints."""

from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from flowengine.main import app


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestHealthAndMetrics:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_metrics_after_run(self, client, linear_flow):
        await client.post("/api/flow/run", json=linear_flow)
        response = await client.get("/api/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "flowengine_run_started_total 1" in response.text

    @pytest.mark.asyncio
    async def test_metrics_summary(self, client, linear_flow):
        await client.post("/api/flow/run", json=linear_flow)
        summary = (await client.get("/api/metrics/summary")).json()
        assert summary["counters"]["run_started_total"] == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_run_ok(self, client, linear_flow):
        response = await client.post("/api/flow/run", json={**linear_flow, "runId": "api-run-1"})
        assert response.status_code == 200
        data = response.json()
        assert data["runId"] == "api-run-1"
        assert data["workflowId"] == "wf-linear"
        assert data["workflowStatus"] == "completed"
        assert data["finalOutputs"] == [{"nodeId": "result", "value": "Hello world!"}]
        assert [t["nodeId"] for t in data["nodeTraces"]] == ["topic", "greet", "result"]

    @pytest.mark.asyncio
    async def test_validation_error_is_422(self, client):
        payload = {"nodes": [{"id": "a", "specId": "teleport"}], "edges": []}
        response = await client.post("/api/flow/run", json=payload)
        assert response.status_code == 422
        assert response.json() == {
            "message": "Workflow validation failed",
            "errors": ["Node 'a': unknown node type 'teleport'."],
        }

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(self, client):
        response = await client.post("/api/flow/run", json={"edges": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_failed_run_is_still_200(self, client):
        payload = {
            "nodes": [
                {"id": "raw", "specId": "input"},
                {"id": "parse", "specId": "json-parse"},
                {"id": "out", "specId": "output"},
            ],
            "edges": [{"source": "raw", "target": "parse"}, {"source": "parse", "target": "out"}],
            "inputs": {"raw": "{nope"},
        }
        response = await client.post("/api/flow/run", json=payload)
        assert response.status_code == 200
        assert response.json()["workflowStatus"] == "failed"
        assert response.json()["nodeStatus"]["parse"] == "error"


class TestStream:
    @pytest.mark.asyncio
    async def test_ndjson_stream(self, client, linear_flow):
        response = await client.post("/api/flow/run/stream", json=linear_flow)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")

        events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
        assert events[0]["type"] == "run_started"
        assert events[-1]["type"] == "complete"
        assert events[-1]["ok"] is True
        assert events[-1]["result"]["finalOutputs"][0]["value"] == "Hello world!"

    @pytest.mark.asyncio
    async def test_ndjson_validation_failure(self, client):
        payload = {"nodes": [], "edges": []}
        response = await client.post("/api/flow/run/stream", json=payload)
        events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
        assert events == [{
            "type": "complete",
            "ok": False,
            "runId": events[0]["runId"],
            "error": "Workflow validation failed",
            "errors": ["Workflow has no nodes."],
        }]

    def test_sse_route_registered(self):
        paths = {(route.path, tuple(sorted(route.methods))) for route in app.routes if hasattr(route, "methods")}
        assert ("/api/flow/run/events", ("POST",)) in paths


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, client):
        response = await client.post("/api/flow/runs/ghost/cancel")
        assert response.status_code == 200
        assert response.json() == {"run_id": "ghost", "cancelled": False}
