"""Error taxonomy for planning and execution.

Planning errors (CycleError, UnresolvedReferenceError, StateConflictError)
abort before any provider call. Provider errors are isolated per resource.
"""


class EngineError(Exception):
    """Base class for engine errors."""


class CycleError(EngineError):
    """Resource graph contains a dependency cycle."""

    def __init__(self, addresses: list[str]):
        self.addresses = list(addresses)
        super().__init__(
            f"Dependency cycle detected involving: {', '.join(self.addresses)}"
        )


class UnresolvedReferenceError(EngineError):
    """A reference or depends_on entry names an undeclared resource."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Resource '{source}' references unknown resource '{target}'")


class ProviderError(EngineError):
    """Error raised by a provider plugin."""


class TransientProviderError(ProviderError):
    """Retryable provider error (rate limiting, propagation delay)."""


class PermanentProviderError(ProviderError):
    """Non-retryable provider error (invalid configuration, permission denied)."""


class ReadinessTimeoutError(EngineError):
    """Readiness predicate did not become true within its timeout."""

    def __init__(self, description: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {description}")


class StateConflictError(EngineError):
    """State changed since the plan was computed."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State serial changed since planning (planned at {expected}, now {actual}). "
            "Re-run plan and try again."
        )
