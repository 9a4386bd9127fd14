"""Error types for the NotebookLM RPC client.

Every error carries a machine-checkable ``code``, whether it is worth
retrying, and a human-actionable suggestion, so a calling agent can decide
to wait and resubmit or to ask the user for fresh cookies.
"""

from typing import Any

MANUAL_AUTH_HINT = (
    "Run `notebooklm-rpc-auth --file` with a fresh cookie header, "
    "or call the save_auth_tokens tool."
)


class NotebookLMError(Exception):
    """Base error for NotebookLM client failures."""

    code = "UNKNOWN"
    retryable = False
    suggestion: str | None = None

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        if suggestion is not None:
            self.suggestion = suggestion

    def to_dict(self) -> dict[str, Any]:
        """Structured form returned to tool callers instead of a traceback."""
        return {
            "status": "error",
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "suggestion": self.suggestion,
            "status_code": self.status_code,
        }


class AuthenticationError(NotebookLMError):
    """Raised when authentication fails (HTTP 401 or RPC Error 16)."""

    code = "AUTH_EXPIRED"
    retryable = True
    suggestion = MANUAL_AUTH_HINT


class AuthMissingError(AuthenticationError):
    """No usable credentials are loaded or persisted."""

    code = "AUTH_MISSING"
    retryable = False


class AuthInvalidError(NotebookLMError):
    """Cookies are present but the gateway forbids access (HTTP 403)."""

    code = "AUTH_INVALID"
    retryable = True
    suggestion = "Check that the cookies belong to a signed-in account with access to NotebookLM."


class NetworkError(NotebookLMError):
    """Connection, DNS or transport failure."""

    code = "NETWORK_ERROR"
    retryable = True
    suggestion = "Check network connectivity and try again."


class NetworkTimeoutError(NetworkError):
    """The request did not complete within its timeout."""

    code = "TIMEOUT"


class RateLimitedError(NetworkError):
    """HTTP 429 from the gateway."""

    code = "RATE_LIMITED"
    suggestion = "Wait a few seconds and try again."


class ServerError(NetworkError):
    """HTTP 5xx from the gateway."""

    code = "SERVER_ERROR"
    suggestion = "Try again in a few seconds."


class HTTPError(NotebookLMError):
    """Non-retryable 4xx response."""

    code = "HTTP_ERROR"


class RPCError(NotebookLMError):
    """A numeric error sentinel embedded in an otherwise well-formed response."""

    code = "RPC_ERROR"

    def __init__(self, message: str, *, rpc_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.rpc_code = rpc_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["rpc_code"] = self.rpc_code
        return data


class ValidationError(NotebookLMError):
    """The caller supplied insufficient or invalid parameters."""

    code = "VALIDATION_ERROR"


def from_status(status: int, message: str | None = None) -> NotebookLMError:
    """Map an HTTP status to the matching error type."""
    if status == 401:
        return AuthenticationError(message or "Authentication expired", status_code=status)
    if status == 403:
        return AuthInvalidError(message or "Access forbidden", status_code=status)
    if status == 429:
        return RateLimitedError(message or "Rate limited by Google", status_code=status)
    if status >= 500:
        return ServerError(message or f"Google server error (HTTP {status})", status_code=status)
    return HTTPError(message or f"Request failed with status {status}", status_code=status)
