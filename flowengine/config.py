"""Application settings — loaded from environment variables."""

from __future__ import annotations

import json
import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger("flowengine.config")


class Settings(BaseSettings):
    # ── Server ──────────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    # ── Logging ─────────────────────────────────────────────────
    LOG_FORMAT: str = "text"  # text | json
    LOG_LEVEL: str = "INFO"

    # ── CORS (builder frontend) ────────────────────────────────
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # ── Scheduler ───────────────────────────────────────────────
    # Global bound on concurrently running node tasks within one run.
    MAX_PARALLELISM: int = 8

    # Per resource-class concurrency pools (nested inside MAX_PARALLELISM).
    POOL_LIMIT_LLM: int = 2
    POOL_LIMIT_HTTP: int = 4
    POOL_LIMIT_IMAGE: int = 1
    POOL_LIMIT_CPU: int = 8

    # ── Retry / timeout defaults ────────────────────────────────
    NODE_DEFAULT_TIMEOUT_MS: int = 30_000
    RETRY_DELAY_MS: int = 250
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_MS: int = 8_000
    # Provider Retry-After hints are honoured up to this many ms.
    RETRY_AFTER_CAP_MS: int = 60_000
    # Failed attempts across a whole run before further retries are refused.
    RUN_FAILURE_CIRCUIT_THRESHOLD: int = 5

    # ── Graph limits ────────────────────────────────────────────
    MAX_NODES: int = 50
    LOOP_MAX_ITERATIONS: int = 1000
    LOOP_MAX_DEPTH: int = 3
    DELAY_MAX_MS: int = 600_000

    # ── LLM connector (OpenAI-compatible endpoint) ─────────────
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_DEFAULT_MODEL: str = "gpt-4"
    LLM_EMBEDDINGS_MODEL: str = "text-embedding-3-small"
    LLM_IMAGE_MODEL: str = "dall-e-3"
    CONDITION_JUDGE_MODEL: str = "gpt-4o-mini"

    # Extra headers injected on every LLM HTTP call (JSON dict).
    # Example: LLM_GATEWAY_HEADERS='{"X-Tenant-ID": "acme"}'
    LLM_GATEWAY_HEADERS: str | None = None

    # Token bucket per credential fingerprint.
    PROVIDER_MAX_REQUESTS_PER_MINUTE: int = 60
    PROVIDER_RATE_LIMIT_WAIT_SECONDS: float = 10.0

    # ── Outbound HTTP node ──────────────────────────────────────
    HTTP_MAX_RESPONSE_BYTES: int = 10 * 1024 * 1024
    HTTP_MAX_REDIRECTS: int = 5
    # Extra hosts denied for every http-request node (comma separated).
    HTTP_DENY_HOSTS: str = ""

    # ── Credentials ─────────────────────────────────────────────
    # Input-map keys of the form <prefix><nodeId> carry that node's credential.
    CREDENTIAL_KEY_PREFIX: str = "__api_key_"

    # ── Telemetry ───────────────────────────────────────────────
    OTLP_ENDPOINT: str | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _clamp_limits(self) -> "Settings":
        """Pools can never be wider than the global bound."""
        for name in ("POOL_LIMIT_LLM", "POOL_LIMIT_HTTP", "POOL_LIMIT_IMAGE", "POOL_LIMIT_CPU"):
            value = getattr(self, name)
            if value < 1:
                object.__setattr__(self, name, 1)
            elif value > self.MAX_PARALLELISM:
                object.__setattr__(self, name, self.MAX_PARALLELISM)
        return self

    def gateway_headers(self) -> dict[str, str]:
        """Parse LLM_GATEWAY_HEADERS; invalid JSON is ignored with a warning."""
        if not self.LLM_GATEWAY_HEADERS:
            return {}
        try:
            parsed = json.loads(self.LLM_GATEWAY_HEADERS)
        except (json.JSONDecodeError, TypeError):
            logger.warning("LLM_GATEWAY_HEADERS is not valid JSON — ignored")
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items()}

    def extra_deny_hosts(self) -> list[str]:
        return [h.strip().lower() for h in self.HTTP_DENY_HOSTS.split(",") if h.strip()]


settings = Settings()
