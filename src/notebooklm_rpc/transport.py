"""HTTP transport for batchexecute calls and streamed answers.

Each call gets two independent retry budgets:

- transient failures (429, 5xx, timeouts, connection errors) are retried up
  to ``max_retries`` times with jittered exponential backoff;
- an auth failure (401/403, a redirect to sign-in, or RPC error 16 in the
  body) triggers one credential recovery and one immediate retry, never more.

Request body, URL and headers are rebuilt on every attempt so a retry after
recovery carries the refreshed token and cookies.
"""

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from . import constants
from .auth import AuthTokens
from .auth_manager import AuthManager
from .codec import decode_response
from .config import Settings
from .encoding import (
    build_batch_url,
    build_query_body,
    build_query_url,
    build_request_body,
    decode_request_body,
    parse_url_params,
)
from .errors import (
    AuthenticationError,
    NetworkError,
    NetworkTimeoutError,
    NotebookLMError,
    from_status,
)
from .streaming import decode_query_response

# Configure logger (API internals only logged at DEBUG level, usually disabled)
logger = logging.getLogger("notebooklm_rpc.api")
logger.setLevel(logging.WARNING)

Prepared = tuple[str, str, dict[str, str]]


def calculate_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with up to 30% jitter, capped at ``max_delay``."""
    exponential = base_delay * (2 ** attempt)
    jitter = random.random() * 0.3 * exponential
    return min(exponential + jitter, max_delay)


def _auth_failure(response: httpx.Response) -> NotebookLMError | None:
    """Auth error for a 401/403 or a redirect to the sign-in page, else None."""
    status = response.status_code
    if status in constants.AUTH_STATUSES:
        return from_status(status)
    if response.is_redirect and constants.LOGIN_DOMAIN in response.headers.get("location", ""):
        return AuthenticationError("Redirected to sign-in", status_code=status)
    return None


def _format_debug_json(data: Any, max_length: int = 2000) -> str:
    """Format data as pretty-printed JSON for debug logging."""
    try:
        formatted = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        formatted = str(data)
    if len(formatted) > max_length:
        return formatted[:max_length] + "\n  ... (truncated)"
    return formatted


class RPCTransport:
    """Sends batchexecute calls with retries and one-shot auth recovery."""

    def __init__(
        self,
        auth: AuthManager,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.auth = auth
        self.settings = settings or auth.settings
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

        # Request counter for _reqid parameter (required for query endpoint)
        self._reqid_counter = random.randint(100000, 999999)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.default_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RPCTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self, tokens: AuthTokens) -> dict[str, str]:
        base_url = self.settings.base_url
        return {
            "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
            "Origin": base_url,
            "Referer": f"{base_url}/",
            "Cookie": tokens.cookie_header,
            "X-Same-Domain": "1",
            "User-Agent": constants.USER_AGENT,
        }

    # =========================================================================
    # Public calls
    # =========================================================================

    async def call(
        self,
        rpc_id: str,
        params: Any,
        path: str = "/",
        timeout: float | None = None,
    ) -> Any:
        """Execute one batchexecute call and return its decoded payload.

        Returns ``None`` when the response has no envelope for ``rpc_id``.
        """

        def prepare(tokens: AuthTokens) -> Prepared:
            url = build_batch_url(
                self.settings.batchexecute_url,
                rpc_id,
                path,
                build_label=self.auth.build_label,
                locale=self.settings.locale,
                session_id=tokens.session_id or None,
            )
            body = build_request_body(rpc_id, params, tokens.csrf_token or None)
            return url, body, self._headers(tokens)

        label = f"{rpc_id} ({constants.RPC_NAMES.get(rpc_id, 'unknown')})"
        return await self._execute(
            label,
            prepare,
            lambda text: decode_response(text, rpc_id),
            timeout or self.settings.default_timeout,
        )

    async def stream_query(self, params: Any, timeout: float | None = None) -> str:
        """Send a question to the streaming answer endpoint; return the answer text."""
        self._reqid_counter += 100000
        req_id = self._reqid_counter

        def prepare(tokens: AuthTokens) -> Prepared:
            url = build_query_url(
                self.settings.query_url,
                req_id,
                build_label=self.auth.build_label,
                locale=self.settings.locale,
                session_id=tokens.session_id or None,
            )
            body = build_query_body(params, tokens.csrf_token)
            headers = {**self._headers(tokens), **constants.QUERY_EXTRA_HEADERS}
            return url, body, headers

        return await self._execute(
            "GenerateFreeFormStreamed (query)",
            prepare,
            decode_query_response,
            timeout or self.settings.query_timeout,
        )

    # =========================================================================
    # Retry loop
    # =========================================================================

    async def _recover_auth(self, cause: NotebookLMError) -> None:
        """Run credential recovery once.

        Raises:
            AuthenticationError: If recovery did not yield usable credentials.
        """
        logger.info(f"Auth failure ({cause.message}); attempting recovery")
        if not await self.auth.refresh():
            raise AuthenticationError(
                "Authentication expired and automatic recovery failed",
                status_code=cause.status_code,
            ) from cause

    async def _execute(
        self,
        label: str,
        prepare: Callable[[AuthTokens], Prepared],
        decode: Callable[[str], Any],
        timeout: float,
    ) -> Any:
        tokens = await self.auth.require_tokens()
        client = self._get_client()
        max_retries = self.settings.max_retries
        auth_retried = False
        attempt = 0

        while True:
            tokens = self.auth.tokens or tokens
            url, body, headers = prepare(tokens)
            self._log_request(label, url, body)

            try:
                response = await client.post(url, content=body, headers=headers, timeout=timeout)
            except httpx.TimeoutException as e:
                failure: NotebookLMError = NetworkTimeoutError(f"Request timed out after {timeout}s")
                cause: BaseException = e
            except httpx.TransportError as e:
                failure = NetworkError(f"Network error: {e}")
                cause = e
            else:
                status = response.status_code
                self._log_response(response)

                error = _auth_failure(response)
                if error is not None:
                    if auth_retried:
                        raise error
                    auth_retried = True
                    await self._recover_auth(error)
                    continue

                if status in self.settings.retry_statuses or status >= 500:
                    failure = from_status(status)
                    cause = failure
                elif status >= 300:
                    raise from_status(status)
                else:
                    try:
                        result = decode(response.text)
                    except AuthenticationError as e:
                        if auth_retried:
                            raise
                        auth_retried = True
                        await self._recover_auth(e)
                        continue

                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug("Response Data:")
                        logger.debug(_format_debug_json(result))
                        logger.debug("=" * 70)
                    return result

            if attempt >= max_retries:
                logger.warning(f"{label} failed after {attempt + 1} attempts: {failure.message}")
                if failure is cause:
                    raise failure
                raise failure from cause

            delay = calculate_backoff(attempt, self.settings.base_delay, self.settings.max_delay)
            logger.debug(f"{label}: {failure.message}; retrying in {delay:.2f}s")
            await self._sleep(delay)
            attempt += 1

    # =========================================================================
    # Debug logging
    # =========================================================================

    def _log_request(self, label: str, url: str, body: str) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug("=" * 70)
        logger.debug(f"RPC Call: {label}")
        logger.debug("-" * 70)

        logger.debug("URL Parameters:")
        for key, value in parse_url_params(url).items():
            logger.debug(f"  {key}: {value}")

        logger.debug("-" * 70)
        logger.debug("Request Params:")
        decoded_body = decode_request_body(body)
        if "params" in decoded_body:
            logger.debug(_format_debug_json(decoded_body["params"]))
        elif "f.req" in decoded_body:
            logger.debug(_format_debug_json(decoded_body["f.req"]))
        else:
            logger.debug(_format_debug_json(decoded_body))

    def _log_response(self, response: httpx.Response) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug("-" * 70)
        logger.debug(f"Response Status: {response.status_code}")
        if response.status_code >= 400:
            logger.debug("Error Response Body:")
            logger.debug(response.text[:2000])
            logger.debug("=" * 70)
