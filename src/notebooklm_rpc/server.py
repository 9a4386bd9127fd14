"""NotebookLM MCP server over the batchexecute client."""

import argparse
import functools
import json
import logging
import os
import secrets
import sys
from dataclasses import replace
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .api_client import NotebookLMClient, extract_source_ids, parse_timestamp
from .auth import (
    extract_csrf_from_request_body,
    extract_session_id_from_url,
    parse_cookie_header,
)
from .codec import at_list
from .config import Settings
from .errors import NotebookLMError

# MCP request/response logger
mcp_logger = logging.getLogger("notebooklm_rpc.mcp")

mcp = FastMCP(
    name="notebooklm",
    instructions="""NotebookLM MCP - Access NotebookLM (notebooklm.google.com).

**Auth:** Errors carry a `code` and `retryable` flag. On AUTH_EXPIRED or AUTH_MISSING, run `notebooklm-rpc-auth --file` via your terminal, or call save_auth_tokens with a fresh cookie header.
**Confirmation:** Tools with confirm param require user approval before setting confirm=True.
**Follow-ups:** Pass the conversation_id from a notebook_query answer to continue the conversation.""",
)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for load balancers and monitoring."""
    return JSONResponse({
        "status": "healthy",
        "service": "notebooklm-rpc",
        "version": __version__,
    })


# Global state
_client: NotebookLMClient | None = None
_query_timeout: float | None = None
_api_key: str | None = os.environ.get("NOTEBOOKLM_API_KEY")


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    if not _api_key:
        return None

    # Allow health check without auth (for load balancers)
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401,
        )

    provided_key = auth_header[len("Bearer "):]
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def logged_tool():
    """Decorator that registers an async tool and logs its request/response."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None and k != "cookies"}
                mcp_logger.debug(f"MCP Request: {tool_name}({json.dumps(params, default=str)})")

            result = await func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug(f"MCP Response: {tool_name} -> {result_str}")

            return result

        mcp.tool()(wrapper)
        return wrapper
    return decorator


def _error_response(e: Exception) -> dict[str, Any]:
    """Structured error for tool callers; never a traceback."""
    if isinstance(e, NotebookLMError):
        return e.to_dict()
    mcp_logger.exception(f"Unexpected tool error: {e}")
    return {
        "status": "error",
        "error": str(e),
        "code": "UNKNOWN",
        "retryable": False,
        "suggestion": None,
        "status_code": None,
    }


def get_client() -> NotebookLMClient:
    """Get or create the API client from NOTEBOOKLM_* settings."""
    global _client
    if _client is None:
        settings = Settings.from_env()
        if _query_timeout is not None:
            settings = replace(settings, query_timeout=_query_timeout)
        _client = NotebookLMClient.from_settings(settings)
    return _client


# =============================================================================
# Auth
# =============================================================================

@logged_tool()
async def refresh_auth() -> dict[str, Any]:
    """Recover authentication: refresh tokens, reload saved cookies, then try the browser.

    Call this after running notebooklm-rpc-auth to pick up new cookies.
    """
    try:
        client = get_client()
        if await client.auth.refresh():
            return {
                "status": "success",
                "message": "Authentication recovered.",
                "auth": client.auth.describe(),
            }
        return {
            "status": "error",
            "error": "Automatic re-authentication failed.",
            "code": "AUTH_EXPIRED",
            "retryable": False,
            "suggestion": "Run `notebooklm-rpc-auth --file` with a fresh cookie header, "
                          "or call save_auth_tokens.",
        }
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def auth_status() -> dict[str, Any]:
    """Show the current credential state without revealing secrets."""
    try:
        client = get_client()
        return {
            "status": "success",
            "auth": client.auth.describe(),
            "needs_token_refresh": client.auth.needs_token_refresh(),
        }
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def save_auth_tokens(
    cookies: str,
    csrf_token: str = "",
    session_id: str = "",
    request_body: str = "",
    request_url: str = "",
) -> dict[str, Any]:
    """Save NotebookLM cookies (FALLBACK method - try notebooklm-rpc-auth first!).

    Args:
        cookies: Cookie header from Chrome DevTools
        csrf_token: Optional - auto-extracted if empty
        session_id: Optional - auto-extracted if empty
        request_body: Optional - a captured batchexecute body containing at=<token>
        request_url: Optional - a captured batchexecute URL containing f.sid=<id>
    """
    try:
        all_cookies = parse_cookie_header(cookies)

        if not csrf_token and request_body:
            csrf_token = extract_csrf_from_request_body(request_body) or ""
        if not session_id and request_url:
            session_id = extract_session_id_from_url(request_url) or ""

        client = get_client()
        tokens = await client.auth.save_manual_tokens(
            all_cookies,
            csrf_token=csrf_token or None,
            session_id=session_id or None,
        )

        if csrf_token:
            token_msg = "CSRF token taken from the supplied request."
        elif tokens.csrf_token:
            token_msg = "CSRF token fetched from the NotebookLM page."
        else:
            token_msg = "CSRF token will be fetched on the first call."

        return {
            "status": "success",
            "message": f"Saved {len(tokens.cookies)} essential cookies "
                       f"(filtered from {len(all_cookies)}). {token_msg}",
            "cache_path": str(client.auth.store.path),
            "extracted_csrf": bool(tokens.csrf_token),
            "extracted_session_id": bool(tokens.session_id),
        }
    except Exception as e:
        return _error_response(e)


# =============================================================================
# Notebooks
# =============================================================================

@logged_tool()
async def notebook_list(max_results: int = 100) -> dict[str, Any]:
    """List all notebooks.

    Args:
        max_results: Maximum number of notebooks to return (default: 100)
    """
    try:
        client = get_client()
        notebooks = await client.list_notebooks()

        owned_count = sum(1 for nb in notebooks if nb.is_owned)
        return {
            "status": "success",
            "count": len(notebooks),
            "owned_count": owned_count,
            "shared_count": len(notebooks) - owned_count,
            "shared_by_me_count": sum(1 for nb in notebooks if nb.is_owned and nb.is_shared),
            "notebooks": [
                {k: v for k, v in nb.to_dict().items() if k != "sources"}
                for nb in notebooks[:max_results]
            ],
        }
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def notebook_create(title: str = "") -> dict[str, Any]:
    """Create a new notebook.

    Args:
        title: Optional title for the notebook
    """
    try:
        client = get_client()
        notebook = await client.create_notebook(title=title)

        if notebook:
            return {
                "status": "success",
                "notebook": {
                    "id": notebook.id,
                    "title": notebook.title,
                    "url": notebook.url,
                },
            }
        return {"status": "error", "error": "Failed to create notebook", "code": "RPC_ERROR", "retryable": False}
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def notebook_get(notebook_id: str) -> dict[str, Any]:
    """Get notebook details with sources.

    Args:
        notebook_id: Notebook UUID
    """
    try:
        client = get_client()
        result = await client.get_notebook(notebook_id)

        # metadata[5] = modified_at, metadata[8] = created_at
        metadata = at_list(result, 0, 5) or []
        return {
            "status": "success",
            "notebook": result,
            "source_ids": extract_source_ids(result),
            "created_at": parse_timestamp(at_list(metadata, 8)),
            "modified_at": parse_timestamp(at_list(metadata, 5)),
        }
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def notebook_rename(notebook_id: str, new_title: str) -> dict[str, Any]:
    """Rename a notebook.

    Args:
        notebook_id: Notebook UUID
        new_title: New title
    """
    try:
        client = get_client()
        if await client.rename_notebook(notebook_id, new_title):
            return {
                "status": "success",
                "notebook": {"id": notebook_id, "title": new_title},
            }
        return {"status": "error", "error": "Failed to rename notebook", "code": "RPC_ERROR", "retryable": False}
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def notebook_delete(notebook_id: str, confirm: bool = False) -> dict[str, Any]:
    """Delete notebook permanently. IRREVERSIBLE. Requires confirm=True.

    Args:
        notebook_id: Notebook UUID
        confirm: Must be True after user approval
    """
    if not confirm:
        return {
            "status": "error",
            "error": "Deletion not confirmed. You must ask the user to confirm "
                     "before deleting. Set confirm=True only after user approval.",
            "code": "VALIDATION_ERROR",
            "retryable": False,
            "warning": "This action is IRREVERSIBLE. The notebook and all its "
                       "sources will be permanently deleted.",
        }

    try:
        client = get_client()
        if await client.delete_notebook(notebook_id):
            return {
                "status": "success",
                "message": f"Notebook {notebook_id} has been permanently deleted.",
            }
        return {"status": "error", "error": "Failed to delete notebook", "code": "RPC_ERROR", "retryable": False}
    except Exception as e:
        return _error_response(e)


# =============================================================================
# Sources
# =============================================================================

def _source_result(result: dict | None, failure: str) -> dict[str, Any]:
    if result is None:
        return {"status": "error", "error": failure, "code": "RPC_ERROR", "retryable": False}
    if result.get("status") == "timeout":
        return result
    return {"status": "success", "source": result}


@logged_tool()
async def notebook_add_url(notebook_id: str, url: str) -> dict[str, Any]:
    """Add URL (website or YouTube) as source.

    Args:
        notebook_id: Notebook UUID
        url: URL to add
    """
    try:
        client = get_client()
        result = await client.add_url_source(notebook_id, url=url)
        return _source_result(result, "Failed to add URL source")
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def notebook_add_text(notebook_id: str, text: str, title: str = "Pasted Text") -> dict[str, Any]:
    """Add pasted text as source.

    Args:
        notebook_id: Notebook UUID
        text: Text content to add
        title: Optional title
    """
    try:
        client = get_client()
        result = await client.add_text_source(notebook_id, text=text, title=title)
        return _source_result(result, "Failed to add text source")
    except Exception as e:
        return _error_response(e)


# =============================================================================
# Query
# =============================================================================

@logged_tool()
async def notebook_query(
    notebook_id: str,
    query: str,
    source_ids: list[str] | str | None = None,
    conversation_id: str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Ask AI about EXISTING sources already in notebook.

    Args:
        notebook_id: Notebook UUID
        query: Question to ask
        source_ids: Source IDs to query (default: all)
        conversation_id: For follow-up questions
        timeout: Request timeout in seconds (default: NOTEBOOKLM_QUERY_TIMEOUT or 120.0)
    """
    try:
        # Some clients send source_ids as a JSON string instead of a list
        if isinstance(source_ids, str):
            try:
                source_ids = json.loads(source_ids)
            except json.JSONDecodeError:
                source_ids = [source_ids]

        client = get_client()
        result = await client.query(
            notebook_id,
            query_text=query,
            source_ids=source_ids,
            conversation_id=conversation_id,
            timeout=timeout,
        )
        return {"status": "success", **result}
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def conversation_history(conversation_id: str) -> dict[str, Any]:
    """Show the locally recorded turns of a conversation.

    Args:
        conversation_id: ID returned by notebook_query
    """
    try:
        turns = get_client().get_conversation_history(conversation_id)
        if turns is None:
            return {
                "status": "error",
                "error": f"No conversation recorded with id {conversation_id}",
                "code": "VALIDATION_ERROR",
                "retryable": False,
            }
        return {"status": "success", "conversation_id": conversation_id, "turns": turns}
    except Exception as e:
        return _error_response(e)


@logged_tool()
async def conversation_clear(conversation_id: str) -> dict[str, Any]:
    """Forget a conversation so the next query with its id starts fresh.

    Args:
        conversation_id: ID returned by notebook_query
    """
    try:
        cleared = get_client().clear_conversation(conversation_id)
        return {"status": "success", "cleared": cleared}
    except Exception as e:
        return _error_response(e)


def _configure_debug_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    for name in ("notebooklm_rpc.mcp", "notebooklm_rpc.api", "notebooklm_rpc.auth"):
        debug_logger = logging.getLogger(name)
        debug_logger.setLevel(logging.DEBUG)
        debug_logger.addHandler(handler)


def main():
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps like Claude Desktop
    - http: Streamable HTTP for network access
    - sse: Legacy SSE transport (backwards compatibility)
    """
    parser = argparse.ArgumentParser(
        description="NotebookLM MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NOTEBOOKLM_MCP_TRANSPORT     Transport type (stdio, http, sse)
  NOTEBOOKLM_MCP_HOST          Host to bind (default: 127.0.0.1)
  NOTEBOOKLM_MCP_PORT          Port to listen on (default: 8000)
  NOTEBOOKLM_MCP_PATH          MCP endpoint path (default: /mcp)
  NOTEBOOKLM_MCP_STATELESS     Enable stateless mode for scaling (true/false)
  NOTEBOOKLM_MCP_DEBUG         Enable debug logging for MCP + API traffic (true/false)
  NOTEBOOKLM_QUERY_TIMEOUT     Query timeout in seconds (default: 120.0)
  NOTEBOOKLM_API_KEY           Bearer key required for HTTP/SSE requests
  NOTEBOOKLM_CACHE_DIR         Where auth.json and conversations.json live

Examples:
  notebooklm-rpc                              # Default stdio transport
  notebooklm-rpc --transport http             # HTTP on localhost:8000
  notebooklm-rpc --transport http --host 0.0.0.0 --api-key secret
  notebooklm-rpc --debug                      # Log MCP calls + NotebookLM API traffic
        """
    )
    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("NOTEBOOKLM_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (default: stdio)"
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("NOTEBOOKLM_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("NOTEBOOKLM_MCP_PORT", "8000")),
        help="Port for HTTP/SSE transport (default: 8000)"
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("NOTEBOOKLM_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (default: /mcp)"
    )
    parser.add_argument(
        "--stateless",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_STATELESS", "").lower() == "true",
        help="Enable stateless mode for horizontal scaling"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_DEBUG", "").lower() == "true",
        help="Enable debug logging (MCP tool calls + NotebookLM API requests/responses)"
    )
    parser.add_argument(
        "--query-timeout",
        type=float,
        default=None,
        help="Query timeout in seconds (default: NOTEBOOKLM_QUERY_TIMEOUT or 120.0)"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("NOTEBOOKLM_API_KEY"),
        help="API key for authentication (also via NOTEBOOKLM_API_KEY env var)"
    )
    args = parser.parse_args()

    global _query_timeout, _api_key
    _query_timeout = args.query_timeout
    _api_key = args.api_key

    if args.debug:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        _configure_debug_logging()
        print("Debug logging: ENABLED (MCP tool calls + NotebookLM API requests/responses)", file=sys.stderr)

    if args.transport == "stdio":
        mcp.run()
        return

    endpoint = args.path if args.transport == "http" else "/sse"
    print(f"Starting NotebookLM MCP server ({args.transport.upper()}) on http://{args.host}:{args.port}{endpoint}")
    print(f"Health check: http://{args.host}:{args.port}/health")
    if args.stateless:
        print("Stateless mode: ENABLED (suitable for horizontal scaling)")

    if not _api_key:
        print("WARNING: No API key set. Server is publicly accessible!")
        print("         Use --api-key or NOTEBOOKLM_API_KEY to secure your server.")
        if args.transport == "http":
            mcp.run(
                transport="http",
                host=args.host,
                port=args.port,
                path=args.path,
                stateless_http=args.stateless,
            )
        else:
            mcp.run(transport="sse", host=args.host, port=args.port)
        return

    import uvicorn

    print("API key authentication: ENABLED")
    if args.transport == "http":
        base_app = mcp.http_app(path=args.path, stateless_http=args.stateless)
    else:
        base_app = mcp.http_app(transport="sse")
    uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
