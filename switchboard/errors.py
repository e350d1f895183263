"""Exception hierarchy for Switchboard.

Completion errors carry a ``retryable`` class flag so the retry policy can
decide without inspecting messages. Tool and loop errors live here too so
callers can catch everything from one module.
"""

from __future__ import annotations


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ConfigurationError(SwitchboardError):
    """Settings are missing or invalid (e.g. no API key)."""


class RequestCancelledError(SwitchboardError):
    """The caller's cancel event was set while the request was in flight."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class CompletionError(SwitchboardError):
    """A completion call failed.

    ``status_code`` is the HTTP status when one was received and
    ``error_type`` the provider's error type string (``overloaded_error``,
    ``invalid_request_error`` ...) when the body carried one.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.error_type = error_type


class AuthenticationError(CompletionError):
    """Credentials rejected (401/403). Never retried."""


class BadRequestError(CompletionError):
    """The request itself is malformed. Never retried."""


class RateLimitError(CompletionError):
    """Rate limit exceeded (429).

    Retried only when the retry policy opts in, and then no sooner than
    ``retry_after_seconds``.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = 429,
        error_type: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(
            message, hint=hint, status_code=status_code, error_type=error_type
        )
        self.retry_after_seconds = retry_after_seconds


class ServerError(CompletionError):
    """Provider-side failure (5xx, overloaded)."""

    retryable = True


class NetworkError(CompletionError):
    """Transport failure: timeout, connection reset, truncated stream."""

    retryable = True


# ---------------------------------------------------------------------------
# Tool loop errors
# ---------------------------------------------------------------------------


class ToolExecutionError(SwitchboardError):
    """A tool callback raised.

    Recovered inside the tool loop: the message becomes an error tool
    result so the model can react to it.
    """

    def __init__(self, tool_name: str, cause: BaseException) -> None:
        detail = str(cause) or type(cause).__name__
        super().__init__(f"Tool '{tool_name}' failed: {detail}")
        self.tool_name = tool_name
        self.cause = cause
        self.detail = detail


class ToolLoopExceededError(SwitchboardError):
    """The model kept requesting tools past ``max_iterations``."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Tool loop exceeded maximum iterations ({max_iterations})",
            hint="Raise max_iterations or check the tool results the model is seeing.",
        )
        self.max_iterations = max_iterations
