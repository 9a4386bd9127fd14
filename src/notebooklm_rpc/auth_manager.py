"""Credential lifecycle and layered recovery.

One ``AuthManager`` instance owns the credential state for everything that
shares it. States:

    Unauthenticated --load/validate--> Authenticated | Unauthenticated
    Authenticated   --age check-----> Authenticated (maybe token refresh)
    any             --refresh()-----> Authenticated | Expired | Unauthenticated

``refresh()`` walks the recovery layers cheapest first and stops at the
first that yields usable credentials:

    1. token refresh    re-scrape the landing page with current cookies
    2. store reload     another process or a manual save may have new cookies
    3. browser          pull a full credential set from a debuggable Chrome
    4. exhausted        Expired if any cookies are held, else Unauthenticated

Both ``refresh()`` and ``refresh_tokens()`` are single-flight: concurrent
callers share one in-flight task and all see its result.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Union

import httpx

from . import constants
from .auth import (
    AuthTokens,
    TokenStore,
    extract_build_label,
    extract_csrf_from_page_source,
    extract_session_id_from_page,
    filter_essential_cookies,
    missing_cookies,
    validate_cookies,
)
from .browser import browser_debug_command, refresh_via_browser
from .config import Settings
from .errors import AuthenticationError, AuthMissingError, NotebookLMError, ValidationError

logger = logging.getLogger("notebooklm_rpc.auth")


@dataclass(frozen=True)
class Unauthenticated:
    name = "unauthenticated"


@dataclass(frozen=True)
class Authenticated:
    tokens: AuthTokens
    csrf_refreshed_at: float
    name = "authenticated"


@dataclass(frozen=True)
class Expired:
    tokens: AuthTokens
    name = "expired"


AuthState = Union[Unauthenticated, Authenticated, Expired]

BrowserRefresher = Callable[[Settings], Awaitable[AuthTokens | None]]
AuthListener = Callable[[AuthState], Any]


class AuthManager:
    """Holds credentials and keeps them usable across hours of calls."""

    def __init__(
        self,
        store: TokenStore,
        settings: Settings | None = None,
        *,
        browser_refresher: BrowserRefresher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Persistent credential file.
            settings: Timeouts, token lifetimes and CDP options.
            browser_refresher: Recovery layer 3; defaults to CDP extraction.
            transport: Optional httpx transport for the landing-page fetch.
            clock: Seconds-since-epoch source, injectable for tests.
        """
        self.store = store
        self.settings = settings or Settings()
        self._browser_refresher = browser_refresher or refresh_via_browser
        self._transport = transport
        self._clock = clock

        self._state: AuthState = Unauthenticated()
        self._build_label: str | None = None
        self._listeners: list[AuthListener] = []

        self._refresh_task: asyncio.Task | None = None
        self._token_task: asyncio.Task | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self._state, Authenticated)

    @property
    def tokens(self) -> AuthTokens | None:
        if isinstance(self._state, (Authenticated, Expired)):
            return self._state.tokens
        return None

    @property
    def build_label(self) -> str:
        """Build label scraped from the page, else the configured default."""
        return self._build_label or self.settings.build_label

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register a state-change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, new_state: AuthState) -> None:
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Auth listener error: {e}")

    def _adopt(self, tokens: AuthTokens, csrf_refreshed_at: float) -> None:
        self._set_state(Authenticated(tokens=tokens, csrf_refreshed_at=csrf_refreshed_at))

    def reset(self) -> None:
        self._build_label = None
        self._set_state(Unauthenticated())

    def describe(self) -> dict[str, Any]:
        """Status summary without secret values."""
        tokens = self.tokens
        info: dict[str, Any] = {
            "state": self._state.name,
            "build_label": self.build_label,
            "cdp_enabled": self.settings.cdp_enabled,
            "cache_path": str(self.store.path),
        }
        if tokens is not None:
            info.update(
                cookie_count=len(tokens.cookies),
                has_csrf_token=bool(tokens.csrf_token),
                has_session_id=bool(tokens.session_id),
                extracted_at=tokens.extracted_at,
            )
        if isinstance(self._state, Authenticated):
            info["token_age_seconds"] = round(self._clock() - self._state.csrf_refreshed_at)
        return info

    # =========================================================================
    # Proactive checks
    # =========================================================================

    def needs_token_refresh(self) -> bool:
        """True when the anti-forgery token is missing or near the end of its life."""
        state = self._state
        if not isinstance(state, Authenticated):
            return False
        if not state.tokens.csrf_token:
            return True
        age = self._clock() - state.csrf_refreshed_at
        return age > (self.settings.token_ttl - self.settings.refresh_buffer)

    def _load_usable(self) -> AuthTokens | None:
        """Stored tokens if their cookies validate and are within max age."""
        tokens = self.store.load()
        if tokens is None:
            return None
        if not validate_cookies(tokens.cookies):
            logger.info(f"Stored cookies are missing: {', '.join(missing_cookies(tokens.cookies))}")
            return None
        if tokens.is_expired(self.settings.max_cookie_age_hours, now=self._clock()):
            logger.info("Stored cookies are past their maximum age")
            return None
        return tokens

    async def ensure_valid(self) -> bool:
        """Make sure usable credentials are loaded before a burst of calls.

        Returns:
            True if the manager is authenticated afterwards.
        """
        if isinstance(self._state, Unauthenticated):
            tokens = self._load_usable()
            if tokens is None:
                return await self.refresh()

            self._adopt(tokens, csrf_refreshed_at=tokens.extracted_at)
            if self.needs_token_refresh():
                refreshed = await self.refresh_tokens()
                if not refreshed and not tokens.csrf_token:
                    # Cannot call without a token; escalate
                    return await self.refresh()
            return True

        if isinstance(self._state, Expired):
            return await self.refresh()

        if self.needs_token_refresh():
            # Best effort: the current token may still be accepted
            await self.refresh_tokens()
        return True

    # =========================================================================
    # Layer 1: token refresh
    # =========================================================================

    async def refresh_tokens(self) -> bool:
        """Re-scrape the anti-forgery token and session id from the landing page."""
        task = self._token_task
        if task is None:
            task = asyncio.ensure_future(self._refresh_tokens())
            self._token_task = task
            task.add_done_callback(self._clear_token_task)
        return await asyncio.shield(task)

    def _clear_token_task(self, task: asyncio.Task) -> None:
        if self._token_task is task:
            self._token_task = None

    async def _refresh_tokens(self) -> bool:
        tokens = self.tokens
        if tokens is None:
            return False
        try:
            refreshed = await self._fetch_page_tokens(tokens)
        except Exception as e:
            logger.info(f"Token refresh failed: {e}")
            return False

        current = self.tokens
        if current is None or current.cookies != tokens.cookies:
            # Cookies were replaced while the page was loading
            logger.info("Credentials changed during token refresh; discarding fetched token")
            return self.is_authenticated

        self._adopt(refreshed, csrf_refreshed_at=self._clock())
        self._persist(refreshed)
        return True

    async def _fetch_page_tokens(self, tokens: AuthTokens) -> AuthTokens:
        """Fetch the landing page with ``tokens``' cookies and scrape new tokens.

        Raises:
            AuthenticationError: If redirected to login or no token is found.
        """
        headers = {**constants.PAGE_FETCH_HEADERS, "Cookie": tokens.cookie_header}
        async with httpx.AsyncClient(
            headers=headers,
            follow_redirects=True,
            timeout=self.settings.page_fetch_timeout,
            transport=self._transport,
        ) as client:
            response = await client.get(f"{self.settings.base_url}/")

        # Redirected to login means the cookies are dead, not just the token
        if constants.LOGIN_DOMAIN in str(response.url):
            raise AuthenticationError("Cookies expired: landing page redirected to sign-in")
        if response.status_code != 200:
            raise AuthenticationError(
                f"Failed to fetch NotebookLM page: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        html = response.text
        csrf_token = extract_csrf_from_page_source(html)
        if not csrf_token:
            raise AuthenticationError("Could not extract CSRF token from page")

        build_label = extract_build_label(html)
        if build_label:
            self._build_label = build_label

        return replace(
            tokens,
            csrf_token=csrf_token,
            session_id=extract_session_id_from_page(html) or tokens.session_id,
            extracted_at=self._clock(),
        )

    def _persist(self, tokens: AuthTokens) -> None:
        try:
            self.store.save(tokens)
        except OSError as e:
            logger.warning(f"Could not save auth tokens to {self.store.path}: {e}")

    # =========================================================================
    # Full recovery
    # =========================================================================

    async def refresh(self) -> bool:
        """Run the layered recovery; concurrent callers share one attempt."""
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
            task.add_done_callback(self._clear_refresh_task)
        return await asyncio.shield(task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _refresh(self) -> bool:
        layers = (
            ("token refresh", self._layer_token_refresh),
            ("store reload", self._layer_reload_store),
            ("browser", self._layer_browser),
        )
        for name, layer in layers:
            try:
                recovered = await layer()
            except Exception as e:
                logger.warning(f"Auth recovery layer '{name}' failed: {e}")
                continue
            if recovered:
                logger.info(f"Auth recovered via {name}")
                return True

        tokens = self.tokens
        self._set_state(Expired(tokens) if tokens is not None else Unauthenticated())
        logger.warning("Auth recovery exhausted; new cookies are required")
        return False

    async def _layer_token_refresh(self) -> bool:
        if self.tokens is None:
            return False
        return await self.refresh_tokens()

    async def _layer_reload_store(self) -> bool:
        tokens = self._load_usable()
        if tokens is None:
            return False
        self._adopt(tokens, csrf_refreshed_at=tokens.extracted_at)
        return await self._refresh_tokens()

    async def _layer_browser(self) -> bool:
        if not self.settings.cdp_enabled:
            logger.info(
                "Browser refresh is disabled. To enable auto-refresh, set "
                "NOTEBOOKLM_CDP_ENABLED=true and launch Chrome with:\n  "
                + browser_debug_command(self.settings.cdp_port)
            )
            return False

        tokens = await self._browser_refresher(self.settings)
        if tokens is None or not validate_cookies(tokens.cookies):
            logger.info(
                "No credentials from the browser. Launch Chrome with:\n  "
                + browser_debug_command(self.settings.cdp_port)
            )
            return False

        if not tokens.extracted_at:
            tokens = replace(tokens, extracted_at=self._clock())
        self._adopt(tokens, csrf_refreshed_at=self._clock())
        self._persist(tokens)
        return True

    # =========================================================================
    # Manual entry
    # =========================================================================

    async def save_manual_tokens(
        self,
        cookies: dict[str, str],
        csrf_token: str | None = None,
        session_id: str | None = None,
    ) -> AuthTokens:
        """Adopt and persist user-supplied cookies.

        Waits for any in-flight token refresh first so its result cannot
        overwrite the new cookies. Without a token, a token refresh is
        attempted immediately.

        Raises:
            ValidationError: If any required cookie is missing.
        """
        missing = missing_cookies(cookies)
        if missing:
            raise ValidationError(
                f"Missing required cookies: {', '.join(missing)}",
                suggestion="Copy the full Cookie header from a signed-in notebooklm.google.com request.",
            )

        pending = self._token_task
        if pending is not None:
            await asyncio.shield(pending)

        essential = filter_essential_cookies(cookies)
        now = self._clock()
        tokens = AuthTokens(
            cookies=essential,
            csrf_token=csrf_token or "",
            session_id=session_id or "",
            extracted_at=now,
        )
        self.store.save(tokens)
        self._adopt(tokens, csrf_refreshed_at=now)

        if not csrf_token:
            await self.refresh_tokens()
        return self.tokens or tokens

    async def require_tokens(self) -> AuthTokens:
        """``ensure_valid`` then return the tokens, or raise.

        Raises:
            AuthenticationError: If no usable credentials could be obtained.
        """
        if not await self.ensure_valid():
            tokens = self.tokens
            if tokens is None:
                raise AuthMissingError("No NotebookLM credentials are available")
            raise AuthenticationError("Authentication expired and could not be recovered")
        tokens = self.tokens
        if tokens is None:
            raise NotebookLMError("Authenticated without tokens")
        return tokens
