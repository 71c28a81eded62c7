"""Judgment collaborator for free-text (``humanCondition``) conditions.

The engine only depends on the ``ConditionJudge`` protocol; the default
implementation asks a small chat model for a JSON verdict using the
condition node's own credential.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from flowengine.config import settings
from flowengine.connectors.llm_client import LLMClient
from flowengine.runtime.errors import MissingCredentialError, ProviderError
from flowengine.templating.expressions import is_truthy

logger = logging.getLogger("flowengine.connectors.judge")

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_SYSTEM_PROMPT = "You are a precise condition evaluator. Always respond with valid JSON only."

_PROMPT = """You are a condition evaluator. Evaluate whether the following condition is true or false based on the provided input value.

Condition: "{condition}"

Input value: {value}

Respond with ONLY a JSON object in this exact format:
{{
  "result": true or false,
  "confidence": a number between 0 and 1,
  "reasoning": "brief explanation"
}}

Be strict and logical. If the condition is ambiguous or cannot be evaluated, return false with low confidence."""


@dataclass
class JudgeVerdict:
    result: bool
    confidence: float = 0.5
    reasoning: str | None = None


class ConditionJudge(Protocol):
    async def judge(self, condition: str, value: Any, *, api_key: str | None) -> JudgeVerdict:
        ...


def describe_value(value: Any) -> str:
    """Render *value* for the judge prompt."""
    if value is None:
        return "null or undefined"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return f"an array with {len(value)} items"
    if isinstance(value, dict):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return "an object"
    return str(value)


def parse_verdict(content: str) -> JudgeVerdict:
    """Read the model's answer; tolerate fenced blocks and bare true/false."""
    match = _FENCED_JSON_RE.search(content) or _OBJECT_RE.search(content)
    raw = (match.group(1) if match and match.groups() else match.group(0)) if match else content
    try:
        parsed = json.loads(raw.strip())
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        confidence = parsed.get("confidence")
        reasoning = parsed.get("reasoning")
        return JudgeVerdict(
            result=is_truthy(parsed.get("result")),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.5,
            reasoning=reasoning if isinstance(reasoning, str) else None,
        )

    lowered = content.lower()
    if "true" in lowered and "false" not in lowered:
        return JudgeVerdict(result=True, confidence=0.3)
    if "false" in lowered and "true" not in lowered:
        return JudgeVerdict(result=False, confidence=0.3)
    raise ProviderError("Could not parse condition judge verdict", provider="judge", retryable=False)


class LLMConditionJudge:
    def __init__(self, http_client: httpx.AsyncClient | None = None, model: str | None = None):
        self._http_client = http_client
        self.model = model or settings.CONDITION_JUDGE_MODEL

    async def judge(self, condition: str, value: Any, *, api_key: str | None) -> JudgeVerdict:
        if not api_key:
            raise MissingCredentialError("condition", provider="judge")
        client = LLMClient(api_key, http_client=self._http_client)
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": _PROMPT.format(condition=condition, value=describe_value(value))},
        ]
        reply = await client.chat(messages, model=self.model, temperature=0.1, max_tokens=200)
        if not reply["text"]:
            raise ProviderError("Condition judge returned no content", provider="judge", retryable=False)
        verdict = parse_verdict(reply["text"])
        logger.debug("Condition judged %s (confidence %.2f)", verdict.result, verdict.confidence)
        return verdict
