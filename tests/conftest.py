"""Shared fixtures for flowengine tests."""

from __future__ import annotations

import json
import socket
from collections import defaultdict

import httpx
import pytest

from flowengine.config import settings
from flowengine.utils import host_policy
from flowengine.utils.metrics import metrics
from flowengine.utils.token_bucket import reset_bucket

CREDENTIAL = "sk-test-4f9a8c7e6d5b4a3c"


async def offline_resolve(host: str) -> list[str]:
    """Numeric hosts resolve as the socket layer would; names resolve nowhere."""
    try:
        return [socket.inet_ntoa(socket.inet_aton(host))]
    except (OSError, ValueError):
        return []


@pytest.fixture(autouse=True)
def _isolate_runtime(monkeypatch):
    """Fast retries, no DNS, fresh metrics and rate-limit buckets for every test."""
    monkeypatch.setattr(host_policy, "resolve_host", offline_resolve)
    monkeypatch.setattr(settings, "RETRY_DELAY_MS", 1)
    monkeypatch.setattr(settings, "RETRY_MAX_DELAY_MS", 5)
    metrics.reset()
    reset_bucket()
    yield
    metrics.reset()
    reset_bucket()


# ── Graph payloads ──────────────────────────────────────────────


@pytest.fixture
def linear_flow():
    """input → template → output; no provider calls."""
    return {
        "nodes": [
            {"id": "topic", "specId": "input", "config": {"name": "topic"}},
            {"id": "greet", "specId": "template", "config": {"template": "Hello {{input}}!"}},
            {"id": "result", "specId": "output", "config": {}},
        ],
        "edges": [
            {"source": "topic", "target": "greet"},
            {"source": "greet", "target": "result"},
        ],
        "inputs": {"topic": "world"},
        "workflowId": "wf-linear",
    }


@pytest.fixture
def loop_flow():
    """input(list) → loop → template → loop-end → output."""
    return {
        "nodes": [
            {"id": "items", "specId": "input", "config": {}},
            {"id": "each", "specId": "loop", "config": {}},
            {"id": "label", "specId": "template", "config": {"template": "item-{{item}}"}},
            {"id": "done", "specId": "loop-end", "config": {}},
            {"id": "result", "specId": "output", "config": {}},
        ],
        "edges": [
            {"source": "items", "target": "each"},
            {"source": "each", "target": "label"},
            {"source": "label", "target": "done"},
            {"source": "done", "target": "result"},
        ],
        "inputs": {"items": [1, 2, 3]},
    }


# ── Fake OpenAI-compatible provider ─────────────────────────────


def chat_reply(text: str, *, model: str = "gpt-4", total_tokens: int = 12) -> dict:
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": total_tokens - 2, "completion_tokens": 2, "total_tokens": total_tokens},
    }


class FakeProvider:
    """Answers chat / embeddings / image calls; queued responses win by path suffix."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.queued: dict[str, list[httpx.Response]] = defaultdict(list)
        self.client: httpx.AsyncClient | None = None

    def queue(self, path_suffix: str, *responses: httpx.Response) -> None:
        self.queued[path_suffix].extend(responses)

    def calls(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, responses in self.queued.items():
            if path.endswith(suffix) and responses:
                return responses.pop(0)
        if path.endswith("/chat/completions"):
            body = json.loads(request.content)
            return httpx.Response(200, json=chat_reply(f"echo: {body['messages'][-1]['content']}"))
        if path.endswith("/embeddings"):
            return httpx.Response(200, json={
                "model": "text-embedding-3-small",
                "data": [{"embedding": [0.1, 0.2, 0.3]}],
                "usage": {"prompt_tokens": 3, "total_tokens": 3},
            })
        if path.endswith("/images/generations"):
            return httpx.Response(200, json={"data": [{"url": "https://img.example.com/1.png"}]})
        return httpx.Response(404, json={"error": {"message": "no such route"}})


@pytest.fixture
async def provider():
    fake = FakeProvider()
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)) as client:
        fake.client = client
        yield fake
