"""Keep credentials out of results, events and log lines.

``SecretRedactor`` works on values: every credential injected into a run is
replaced by ``REDACTION_PLACEHOLDER`` wherever it shows up, and the engine
passes everything that leaves a run through it.  ``redact_sensitive_data``
works on key names instead and is only used to log node configs.
"""
import re
from typing import Any, Iterable, Mapping

REDACTION_PLACEHOLDER = "***REDACTED***"

# Key names whose values are never logged.
SENSITIVE_KEY_RE = re.compile(
    r"password|token|secret|credential|authorization|(?:api|private|access)[_-]?key",
    re.IGNORECASE,
)


def _is_sensitive_key(key: str, pattern: re.Pattern | None = None) -> bool:
    return (pattern or SENSITIVE_KEY_RE).search(key) is not None


def redact_sensitive_data(data: Any, max_depth: int = 10, pattern: re.Pattern | None = None) -> Any:
    """Copy *data*, blanking every mapping value stored under a sensitive key.

    Containers nested deeper than *max_depth* are returned untouched.
    """
    if max_depth <= 0:
        return data
    depth = max_depth - 1
    if isinstance(data, dict):
        return {
            key: REDACTION_PLACEHOLDER if _is_sensitive_key(str(key), pattern)
            else redact_sensitive_data(value, depth, pattern)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        items = [redact_sensitive_data(item, depth, pattern) for item in data]
        return items if isinstance(data, list) else tuple(items)
    return data


def collect_credentials(inputs: Mapping[str, Any], prefix: str) -> list[str]:
    """Return every string stored under a reserved credential key of *inputs*.

    Padded values are returned both as given and stripped, since the
    stripped form is what gets sent to providers.
    """
    found: list[str] = []
    for key, value in inputs.items():
        if not str(key).startswith(prefix):
            continue
        if isinstance(value, str):
            values = [value]
        elif isinstance(value, Mapping):
            values = [v for v in value.values() if isinstance(v, str)]
        else:
            continue
        for raw in values:
            if not raw.strip():
                continue
            found.append(raw)
            if raw.strip() != raw:
                found.append(raw.strip())
    return found


class SecretRedactor:
    """Replaces known credential values wherever they appear in a value tree.

    Matching is literal substring matching, longest credential first, so a
    credential that contains another credential is never half-replaced.
    """

    def __init__(self, secrets: Iterable[str] = (), placeholder: str = REDACTION_PLACEHOLDER):
        candidates = {s for s in secrets if isinstance(s, str) and s}
        self.placeholder = placeholder
        self._secrets = sorted(candidates, key=len, reverse=True)
        self._pattern = (
            re.compile("|".join(re.escape(s) for s in self._secrets)) if self._secrets else None
        )

    def __bool__(self) -> bool:
        return self._pattern is not None

    def redact_text(self, text: str) -> str:
        if self._pattern is None:
            return text
        return self._pattern.sub(self.placeholder, text)

    def redact(self, value: Any) -> Any:
        """Return a redacted copy of *value*; non-string leaves pass through."""
        if not self:
            return value
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            return {
                (self.redact_text(k) if isinstance(k, str) else k): self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.redact(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.redact(item) for item in value)
        return value
