"""Exception hierarchy shared by the agent loop, providers and tools."""


class KestrelError(Exception):
    """Base class for every error raised by kestrel."""


class AgentError(KestrelError):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class TurnLimitExceeded(AgentError):
    """The turn ran more model round-trips than allowed."""

    def __init__(self, max_turns: int):
        super().__init__(f"turn exceeded the limit of {max_turns} round-trips")
        self.max_turns = max_turns


class Cancelled(AgentError):
    """The active turn was cancelled by the user."""

    def __init__(self, message: str = "cancelled by user", output: str = ""):
        super().__init__(message)
        self.message = message
        self.output = output

    def render(self) -> str:
        if self.output:
            return f"{self.message}\n{self.output}"
        return self.message


class ConfigError(KestrelError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


# -- Provider errors ---------------------------------------------------------


class ProviderError(KestrelError):
    """A failure talking to the model backend.

    ``kind`` is a stable identifier used in reports and StreamError events.
    ``retryable`` tells callers whether repeating the same request may succeed.
    """

    kind = "provider_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(ProviderError):
    kind = "auth"


class RateLimitError(ProviderError):
    kind = "rate_limit"
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(ProviderError):
    kind = "network"
    retryable = True


class ContextTooLarge(ProviderError):
    kind = "context_too_large"

    def __init__(self, message: str, current: int | None = None, limit: int | None = None):
        super().__init__(message)
        self.current = current
        self.limit = limit


class MalformedResponse(ProviderError):
    kind = "malformed_response"


class InvalidRequest(ProviderError):
    kind = "invalid_request"


PROVIDER_ERRORS: dict[str, type[ProviderError]] = {
    cls.kind: cls
    for cls in (
        AuthError,
        RateLimitError,
        NetworkError,
        ContextTooLarge,
        MalformedResponse,
        InvalidRequest,
    )
}


def provider_error(kind: str, message: str) -> ProviderError:
    """Build the ProviderError subclass registered for ``kind``."""
    cls = PROVIDER_ERRORS.get(kind, MalformedResponse)
    return cls(message)


# -- Tool errors -------------------------------------------------------------


class ToolError(KestrelError):
    """A tool invocation failed; always folded back into a ToolResult."""

    kind = "tool_error"

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.message = message
        self.output = output

    def render(self) -> str:
        """Text fed back to the model for this failure."""
        if self.output:
            return f"{self.message}\n{self.output}"
        return self.message


class ValidationError(ToolError):
    kind = "validation_error"


class NotFound(ToolError):
    kind = "not_found"


class PermissionDenied(ToolError):
    kind = "permission_denied"


class ExecutionFailed(ToolError):
    kind = "execution_failed"

    def __init__(self, message: str, output: str = "", exit_code: int | None = None):
        super().__init__(message, output)
        self.exit_code = exit_code


class Timeout(ToolError):
    kind = "timeout"

    def __init__(self, message: str, output: str = "", seconds: float | None = None):
        super().__init__(message, output)
        self.seconds = seconds
