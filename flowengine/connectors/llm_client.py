"""LLM client connector (OpenAI-compatible chat, embeddings and images APIs).

The credential is always supplied by the caller (it arrives in the run's
input map); this client never reads a key from configuration.  Calls share
the run's ``httpx.AsyncClient`` when one is given and pass through a
per-credential token bucket.

Failures are raised as ``ProviderError``: network errors, 408, 429 and 5xx
are retryable and carry the provider's Retry-After hint; other 4xx are not.
"""

from __future__ import annotations

import json as _json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Callable

import httpx

from flowengine.config import settings
from flowengine.runtime.errors import ProviderError
from flowengine.utils.token_bucket import RateLimitExceededError, acquire_rate_limit, fingerprint

logger = logging.getLogger("flowengine.connectors.llm")

_PROVIDER = "openai"


def parse_retry_after(header: str | None) -> int | None:
    """Retry-After (seconds or HTTP-date) → milliseconds."""
    if not header or not header.strip():
        return None
    value = header.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta * 1000))


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return resp.text[:200]


def _usage(data: dict[str, Any]) -> dict[str, int]:
    usage = data.get("usage") or {}
    return {
        "prompt_tokens": usage.get("prompt_tokens", 0) or 0,
        "completion_tokens": usage.get("completion_tokens", 0) or 0,
        "total_tokens": usage.get("total_tokens", 0) or 0,
    }


class LLMClient:
    """OpenAI-compatible client bound to one credential.

    Parameters
    ----------
    api_key : str
        Credential for this call, taken from the run inputs.
    http_client : httpx.AsyncClient | None
        Shared client; a short-lived one is created per call when omitted.
    base_url : str | None
        Override the global ``LLM_BASE_URL``.
    extra_headers : dict[str, str] | None
        Merged on top of ``LLM_GATEWAY_HEADERS``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        extra_headers: dict[str, str] | None = None,
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self.timeout = timeout_seconds
        self._client = http_client
        self._extra_headers = settings.gateway_headers()
        if extra_headers:
            self._extra_headers.update(extra_headers)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self._extra_headers)
        return headers

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def _throttle(self) -> None:
        try:
            await acquire_rate_limit(
                fingerprint(self.api_key),
                settings.PROVIDER_MAX_REQUESTS_PER_MINUTE,
                timeout=settings.PROVIDER_RATE_LIMIT_WAIT_SECONDS,
            )
        except RateLimitExceededError as exc:
            raise ProviderError(str(exc), provider=_PROVIDER, status_code=429) from exc

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        raise ProviderError(
            f"{_PROVIDER} request failed: HTTP {resp.status_code}: {_error_detail(resp)}",
            provider=_PROVIDER,
            status_code=resp.status_code,
            retry_after_ms=parse_retry_after(resp.headers.get("retry-after")),
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        await self._throttle()
        url = f"{self.base_url}{path}"
        logger.info("LLM call: model=%s url=%s", body.get("model"), url)
        try:
            async with self._http() as client:
                resp = await client.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{_PROVIDER} request timeout: {exc}", provider=_PROVIDER) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{_PROVIDER} request error: {exc}", provider=_PROVIDER) from exc
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{_PROVIDER} returned invalid JSON", provider=_PROVIDER) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{_PROVIDER} returned an unexpected payload", provider=_PROVIDER)
        return data

    # ── Chat ────────────────────────────────────────────────────

    @staticmethod
    def _chat_body(
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None,
        max_tokens: int | None,
        json_mode: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        data = await self._post(
            "/chat/completions",
            self._chat_body(messages, model, temperature, max_tokens, json_mode),
        )
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(f"{_PROVIDER} response missing choices", provider=_PROVIDER, retryable=False)
        text = (choices[0].get("message") or {}).get("content") or ""
        return {"text": text, "usage": _usage(data), "model": data.get("model") or model}

    async def chat_stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        on_delta: Callable[[str], None],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Server-sent-events chat; every content delta is passed to *on_delta*."""
        await self._throttle()
        body = self._chat_body(messages, model, temperature, max_tokens, False)
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}
        url = f"{self.base_url}/chat/completions"
        logger.info("LLM stream call: model=%s url=%s", model, url)

        parts: list[str] = []
        usage: dict[str, Any] = {}
        resolved_model = model
        try:
            async with self._http() as client:
                async with client.stream(
                    "POST", url, json=body, headers=self._headers(), timeout=self.timeout
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            chunk = _json.loads(payload)
                        except ValueError:
                            logger.debug("Skipping malformed stream chunk")
                            continue
                        resolved_model = chunk.get("model") or resolved_model
                        if chunk.get("usage"):
                            usage = chunk["usage"]
                        for choice in chunk.get("choices") or []:
                            delta = (choice.get("delta") or {}).get("content")
                            if delta:
                                parts.append(delta)
                                on_delta(delta)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{_PROVIDER} stream timeout: {exc}", provider=_PROVIDER) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{_PROVIDER} stream error: {exc}", provider=_PROVIDER) from exc

        return {"text": "".join(parts), "usage": _usage({"usage": usage}), "model": resolved_model}

    # ── Embeddings & images ─────────────────────────────────────

    async def embeddings(self, text: str, model: str) -> dict[str, Any]:
        data = await self._post("/embeddings", {"model": model, "input": text})
        items = data.get("data") or []
        if not items or "embedding" not in items[0]:
            raise ProviderError(f"{_PROVIDER} response missing embedding", provider=_PROVIDER, retryable=False)
        return {"vector": items[0]["embedding"], "usage": _usage(data), "model": data.get("model") or model}

    async def image(self, prompt: str, model: str, size: str, quality: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"model": model, "prompt": prompt, "size": size, "n": 1}
        if quality and model != "dall-e-2":
            body["quality"] = quality
        data = await self._post("/images/generations", body)
        items = data.get("data") or []
        if not items:
            raise ProviderError(f"{_PROVIDER} response missing image", provider=_PROVIDER, retryable=False)
        first = items[0]
        url = first.get("url") or (f"data:image/png;base64,{first['b64_json']}" if first.get("b64_json") else None)
        if not url:
            raise ProviderError(f"{_PROVIDER} response missing image url", provider=_PROVIDER, retryable=False)
        return {"url": url, "revised_prompt": first.get("revised_prompt"), "model": model}
