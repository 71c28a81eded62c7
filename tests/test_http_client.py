"""Tests for the guarded outbound HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from flowengine.config import settings
from flowengine.connectors.http_client import GuardedHttpClient, HttpRequest, exceeds_json_depth
from flowengine.runtime.errors import HostBlockedError, ProviderError


class Recorder:
    """MockTransport handler answering from a url → (status, kwargs) map."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, dict]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, url: str, status: int, **kwargs) -> None:
        self.routes[url] = (status, kwargs)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.routes:
            status, kwargs = self.routes[url]
            return httpx.Response(status, **kwargs)
        return httpx.Response(200, json={"method": request.method, "url": url})


@pytest.fixture
async def http():
    recorder = Recorder()
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        yield GuardedHttpClient(client), recorder


class TestSend:
    @pytest.mark.asyncio
    async def test_get_json(self, http):
        guarded, recorder = http
        result = await guarded.send(HttpRequest(url="https://api.example.com/items"))
        assert result["status"] == 200
        assert result["statusText"] == "OK"
        assert result["data"] == {"method": "GET", "url": "https://api.example.com/items"}
        assert result["url"] == "https://api.example.com/items"
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_text_body_returned_as_text(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/plain", 200, text="just text")
        result = await guarded.send(HttpRequest(url="https://api.example.com/plain"))
        assert result["data"] == "just text"

    @pytest.mark.asyncio
    async def test_post_json_body(self, http):
        guarded, recorder = http
        await guarded.send(HttpRequest(url="https://api.example.com/items", method="post", body={"a": 1}))
        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"a": 1}

    @pytest.mark.asyncio
    async def test_string_body_content_type(self, http):
        guarded, recorder = http
        await guarded.send(HttpRequest(url="https://api.example.com/items", method="PUT", body='{"a": 1}'))
        request = recorder.requests[0]
        assert request.headers["content-type"] == "application/json"
        assert request.content == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_get_never_sends_body(self, http):
        guarded, recorder = http
        await guarded.send(HttpRequest(url="https://api.example.com/items", body={"ignored": True}))
        assert recorder.requests[0].content == b""

    @pytest.mark.asyncio
    async def test_sensitive_headers_stripped_and_idempotency_key_set(self, http):
        guarded, recorder = http
        await guarded.send(HttpRequest(
            url="https://api.example.com/items",
            method="POST",
            headers={"Cookie": "session=abc", "X-Trace": "t-1"},
            idempotency_key="order-42",
        ))
        headers = recorder.requests[0].headers
        assert "cookie" not in headers
        assert headers["x-trace"] == "t-1"
        assert headers["idempotency-key"] == "order-42"

    @pytest.mark.asyncio
    async def test_client_errors_returned_as_data(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/missing", 404, json={"error": "nope"})
        result = await guarded.send(HttpRequest(url="https://api.example.com/missing"))
        assert result["status"] == 404
        assert result["data"] == {"error": "nope"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    async def test_retryable_statuses_raise(self, http, status):
        guarded, recorder = http
        recorder.route("https://api.example.com/flaky", status, headers={"retry-after": "1"})
        with pytest.raises(ProviderError) as exc_info:
            await guarded.send(HttpRequest(url="https://api.example.com/flaky"))
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == status
        assert exc_info.value.retry_after_ms == 1000

    @pytest.mark.asyncio
    async def test_network_error_retryable(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(ProviderError, match="HTTP request error") as exc_info:
                await GuardedHttpClient(client).send(HttpRequest(url="https://api.example.com/"))
        assert exc_info.value.retryable is True


class TestHostPolicy:
    @pytest.mark.asyncio
    async def test_blocked_before_any_io(self, http):
        guarded, recorder = http
        with pytest.raises(HostBlockedError, match="blocked host: 127.0.0.1"):
            await guarded.send(HttpRequest(url="http://127.0.0.1/admin"))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_name_resolving_to_private_address_blocked(self):
        recorder = Recorder()

        async def rebind(host):
            return ["10.20.30.40"]

        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            guarded = GuardedHttpClient(client, resolver=rebind)
            with pytest.raises(HostBlockedError, match="resolves to internal address 10.20.30.40"):
                await guarded.send(HttpRequest(url="https://api.example.com/"))
        assert recorder.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://127.1/admin", "http://2130706433/admin", "http://localhost./admin"])
    async def test_loopback_spellings_blocked(self, http, url):
        guarded, recorder = http
        with pytest.raises(HostBlockedError):
            await guarded.send(HttpRequest(url=url))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_allow_only(self, http):
        guarded, recorder = http
        with pytest.raises(HostBlockedError, match="allow list"):
            await guarded.send(HttpRequest(url="https://evil.example.net/", allow_only=["api.example.com"]))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_settings_deny_list(self, http, monkeypatch):
        guarded, recorder = http
        monkeypatch.setattr(settings, "HTTP_DENY_HOSTS", "blocked.example.com")
        with pytest.raises(HostBlockedError):
            await guarded.send(HttpRequest(url="https://blocked.example.com/"))

    @pytest.mark.asyncio
    async def test_host_blocked_is_not_retryable(self, http):
        guarded, _ = http
        with pytest.raises(HostBlockedError) as exc_info:
            await guarded.send(HttpRequest(url="http://10.1.2.3/"))
        assert exc_info.value.retryable is False


class TestRedirects:
    @pytest.mark.asyncio
    async def test_redirect_followed(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/old", 301, headers={"location": "/new"})
        result = await guarded.send(HttpRequest(url="https://api.example.com/old"))
        assert result["url"] == "https://api.example.com/new"
        assert [str(r.url) for r in recorder.requests] == [
            "https://api.example.com/old",
            "https://api.example.com/new",
        ]

    @pytest.mark.asyncio
    async def test_redirect_to_private_host_blocked(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/jump", 302, headers={"location": "http://169.254.169.254/latest/meta-data/"})
        with pytest.raises(HostBlockedError):
            await guarded.send(HttpRequest(url="https://api.example.com/jump"))
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_see_other_switches_to_get(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/submit", 303, headers={"location": "/status"})
        result = await guarded.send(HttpRequest(url="https://api.example.com/submit", method="POST", body={"x": 1}))
        assert result["data"]["method"] == "GET"
        assert recorder.requests[1].content == b""

    @pytest.mark.asyncio
    async def test_too_many_redirects(self):
        recorder = Recorder()
        recorder.route("https://api.example.com/a", 302, headers={"location": "/b"})
        recorder.route("https://api.example.com/b", 302, headers={"location": "/a"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            with pytest.raises(ProviderError, match="Too many redirects") as exc_info:
                await GuardedHttpClient(client, max_redirects=2).send(HttpRequest(url="https://api.example.com/a"))
        assert exc_info.value.retryable is False
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_redirect_not_followed_when_disabled(self, http):
        guarded, recorder = http
        recorder.route("https://api.example.com/old", 301, headers={"location": "/new"})
        result = await guarded.send(HttpRequest(url="https://api.example.com/old", follow_redirects=False))
        assert result["status"] == 301
        assert len(recorder.requests) == 1


class TestResponseLimits:
    @pytest.mark.asyncio
    async def test_oversized_response_rejected(self):
        recorder = Recorder()
        recorder.route("https://api.example.com/big", 200, content=b"x" * 100)
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            with pytest.raises(ProviderError, match="Response too large") as exc_info:
                await GuardedHttpClient(client, max_response_bytes=10).send(
                    HttpRequest(url="https://api.example.com/big")
                )
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_deeply_nested_json_rejected(self, http):
        guarded, recorder = http
        nested: object = 1
        for _ in range(40):
            nested = [nested]
        recorder.route("https://api.example.com/deep", 200, json=nested)
        with pytest.raises(ProviderError, match="nested deeper"):
            await guarded.send(HttpRequest(url="https://api.example.com/deep"))


class TestJsonDepth:
    def test_shallow(self):
        assert exceeds_json_depth({"a": [1, {"b": 2}]}) is False

    def test_limit(self):
        value: object = "leaf"
        for _ in range(5):
            value = {"k": value}
        assert exceeds_json_depth(value, max_depth=5) is True
        assert exceeds_json_depth(value, max_depth=6) is False
