"""Guarded outbound HTTP for the http-request node.

Host policy is enforced before the first byte is sent and again for every
redirect hop (redirects are followed manually).  Sensitive outgoing headers
are stripped and response bodies are capped.

Responses with 408, 429 or 5xx raise a retryable ``ProviderError``; any
other status is returned to the workflow as data.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from urllib.parse import urljoin

import httpx

from flowengine.config import settings
from flowengine.connectors.llm_client import parse_retry_after
from flowengine.runtime.errors import HostBlockedError, ProviderError, is_retryable_status
from flowengine.utils.host_policy import (
    HostPolicyViolation,
    Resolver,
    check_url,
    ensure_public_address,
    strip_sensitive_headers,
)

logger = logging.getLogger("flowengine.connectors.http")

_PROVIDER = "http"
MAX_JSON_DEPTH = 32
_BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "DELETE"})


def exceeds_json_depth(value: Any, max_depth: int = MAX_JSON_DEPTH, current: int = 0) -> bool:
    if current >= max_depth:
        return True
    if isinstance(value, dict):
        return any(exceeds_json_depth(v, max_depth, current + 1) for v in value.values())
    if isinstance(value, list):
        return any(exceeds_json_depth(v, max_depth, current + 1) for v in value)
    return False


@dataclass
class HttpRequest:
    url: str
    method: str = "GET"
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_ms: int = 30_000
    follow_redirects: bool = True
    allow_only: list[str] = field(default_factory=list)
    deny_hosts: list[str] = field(default_factory=list)
    idempotency_key: str | None = None


class GuardedHttpClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        max_response_bytes: int | None = None,
        max_redirects: int | None = None,
        resolver: Resolver | None = None,
    ):
        self._client = http_client
        self._resolver = resolver
        self.max_response_bytes = max_response_bytes or settings.HTTP_MAX_RESPONSE_BYTES
        self.max_redirects = settings.HTTP_MAX_REDIRECTS if max_redirects is None else max_redirects

    @asynccontextmanager
    async def _http(self, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    async def _check(self, req: HttpRequest, url: str) -> None:
        try:
            host = check_url(
                url,
                deny_hosts=[*settings.extra_deny_hosts(), *req.deny_hosts],
                allow_only=req.allow_only,
            )
            await ensure_public_address(host, self._resolver)
        except HostPolicyViolation as exc:
            logger.warning("Outbound request refused: %s", exc)
            raise HostBlockedError(str(exc)) from exc

    def _build(self, req: HttpRequest, method: str, body: Any) -> dict[str, Any]:
        headers = strip_sensitive_headers(req.headers)
        if req.idempotency_key:
            headers["Idempotency-Key"] = req.idempotency_key
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None and method not in _BODYLESS_METHODS:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            elif isinstance(body, bytes):
                kwargs["content"] = body
            else:
                kwargs["content"] = str(body).encode("utf-8")
                headers.setdefault("Content-Type", "application/json" if _looks_json(body) else "text/plain")
        return kwargs

    async def send(self, req: HttpRequest) -> dict[str, Any]:
        """Perform *req*; returns ``{status, statusText, headers, data, url}``."""
        await self._check(req, req.url)
        timeout = max(req.timeout_ms, 1) / 1000.0
        url, method, body = req.url, req.method.upper(), req.body
        redirects = 0

        try:
            async with self._http(timeout) as client:
                while True:
                    logger.info("HTTP %s %s", method, url)
                    async with client.stream(
                        method, url, timeout=timeout, follow_redirects=False,
                        **self._build(req, method, body),
                    ) as resp:
                        if resp.is_redirect and req.follow_redirects:
                            location = resp.headers.get("location", "")
                            redirects += 1
                            if redirects > self.max_redirects:
                                raise ProviderError(
                                    f"Too many redirects (>{self.max_redirects})",
                                    provider=_PROVIDER, retryable=False,
                                )
                            url = urljoin(str(resp.url), location)
                            await self._check(req, url)
                            if resp.status_code == 303 or (
                                resp.status_code in (301, 302) and method == "POST"
                            ):
                                method, body = "GET", None
                            continue
                        raw = await self._read_capped(resp)
                        return self._to_result(resp, raw)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"HTTP request timeout: {exc}", provider=_PROVIDER) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"HTTP request error: {exc}", provider=_PROVIDER) from exc

    async def _read_capped(self, resp: httpx.Response) -> bytes:
        declared = resp.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_response_bytes:
            raise ProviderError(
                f"Response too large ({declared} bytes > {self.max_response_bytes})",
                provider=_PROVIDER, retryable=False,
            )
        chunks: list[bytes] = []
        size = 0
        async for chunk in resp.aiter_bytes():
            size += len(chunk)
            if size > self.max_response_bytes:
                raise ProviderError(
                    f"Response too large (> {self.max_response_bytes} bytes)",
                    provider=_PROVIDER, retryable=False,
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def _to_result(self, resp: httpx.Response, raw: bytes) -> dict[str, Any]:
        if resp.status_code >= 400 and is_retryable_status(resp.status_code):
            raise ProviderError(
                f"HTTP {resp.status_code} {resp.reason_phrase} from {resp.url.host}",
                provider=_PROVIDER,
                status_code=resp.status_code,
                retry_after_ms=parse_retry_after(resp.headers.get("retry-after")),
            )

        content_type = resp.headers.get("content-type", "")
        text = raw.decode(resp.encoding or "utf-8", errors="replace")
        data: Any = text
        if "json" in content_type and text.strip():
            try:
                data = json.loads(text)
            except ValueError:
                logger.debug("Response declared JSON but did not parse; returning text")
                data = text
            else:
                if exceeds_json_depth(data):
                    raise ProviderError(
                        f"Response JSON is nested deeper than {MAX_JSON_DEPTH} levels",
                        provider=_PROVIDER, retryable=False,
                    )
        return {
            "status": resp.status_code,
            "statusText": resp.reason_phrase,
            "headers": dict(resp.headers),
            "data": data,
            "url": str(resp.url),
        }


def _looks_json(body: Any) -> bool:
    if not isinstance(body, str):
        return False
    stripped = body.strip()
    return stripped[:1] in ("{", "[")
