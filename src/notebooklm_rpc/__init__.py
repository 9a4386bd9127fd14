"""Async client and MCP server for NotebookLM's batchexecute protocol."""

__version__ = "0.1.0"

from .api_client import Notebook, NotebookLMClient
from .auth import AuthTokens, TokenStore
from .auth_manager import AuthManager, Authenticated, Expired, Unauthenticated
from .config import Settings
from .errors import (
    AuthenticationError,
    AuthInvalidError,
    AuthMissingError,
    HTTPError,
    NetworkError,
    NetworkTimeoutError,
    NotebookLMError,
    RateLimitedError,
    RPCError,
    ServerError,
    ValidationError,
)
from .transport import RPCTransport

__all__ = [
    "__version__",
    "AuthManager",
    "AuthTokens",
    "Authenticated",
    "AuthenticationError",
    "AuthInvalidError",
    "AuthMissingError",
    "Expired",
    "HTTPError",
    "NetworkError",
    "NetworkTimeoutError",
    "Notebook",
    "NotebookLMClient",
    "NotebookLMError",
    "RPCTransport",
    "RPCError",
    "RateLimitedError",
    "ServerError",
    "Settings",
    "TokenStore",
    "Unauthenticated",
    "ValidationError",
]
