"""Node-level failure taxonomy.

``ValidationError`` (graph-level, fatal) lives in ``flowengine.compiler.validator``.
Everything here is contained to the failing node's branch by skip propagation.
"""

from __future__ import annotations


class NodeExecutionError(Exception):
    """A node's executor failed.  ``retryable`` controls the retry wrapper."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class NodeTimeoutError(NodeExecutionError):
    def __init__(self, node_id: str, timeout_ms: int):
        super().__init__(f"Node '{node_id}' timed out after {timeout_ms}ms", retryable=True)
        self.node_id = node_id
        self.timeout_ms = timeout_ms


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return True
    return status_code in (408, 429) or 500 <= status_code < 600


class ProviderError(NodeExecutionError):
    """AI or HTTP provider failure.

    Retryable for network errors, 408, 429 and 5xx; 4xx responses (bad
    prompt, bad credential) are not retried.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "provider",
        status_code: int | None = None,
        retry_after_ms: int | None = None,
        retryable: bool | None = None,
    ):
        if retryable is None:
            retryable = is_retryable_status(status_code)
        super().__init__(message, retryable=retryable)
        self.provider = provider
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms


class HostBlockedError(ProviderError):
    """Outbound host rejected by policy; raised before any network I/O."""

    def __init__(self, message: str):
        super().__init__(message, provider="http", retryable=False)


class MissingCredentialError(ProviderError):
    def __init__(self, node_id: str, provider: str = "openai"):
        super().__init__(
            f"No API key supplied for node '{node_id}'; provide one in the run inputs.",
            provider=provider,
            retryable=False,
        )


class LoopIterationError(NodeExecutionError):
    """A loop iteration failed; ``partial`` holds the body outcomes gathered so far."""

    def __init__(self, loop_id: str, iteration: int, failed: list[str], partial=None):
        super().__init__(
            f"Loop '{loop_id}' iteration {iteration} failed at: {', '.join(failed)}",
            retryable=False,
        )
        self.loop_id = loop_id
        self.iteration = iteration
        self.partial = partial
