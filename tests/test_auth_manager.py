"""Tests for credential state and layered recovery."""

import asyncio
from dataclasses import replace

import httpx
import pytest

from conftest import PAGE_HTML, VALID_COOKIES
from notebooklm_rpc.auth import AuthTokens
from notebooklm_rpc.auth_manager import AuthManager, Authenticated, Expired, Unauthenticated
from notebooklm_rpc.errors import AuthenticationError, AuthMissingError, ValidationError

NOW = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class LandingPage:
    """Mock transport for the landing-page fetch.

    Requests whose cookies are in ``dead_sids`` are redirected to sign-in.
    """

    def __init__(self, status: int = 200, dead_sids: tuple[str, ...] = ()):
        self.status = status
        self.dead_sids = dead_sids
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.google.com":
            return httpx.Response(200, text="<html>Sign in</html>")
        self.requests.append(request)
        cookie = request.headers.get("cookie", "")
        if any(f"SID={sid};" in cookie for sid in self.dead_sids):
            return httpx.Response(
                302, headers={"Location": "https://accounts.google.com/ServiceLogin"}
            )
        return httpx.Response(self.status, text=PAGE_HTML)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class GatedLandingPage(LandingPage):
    """Landing page that holds every fetch until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def gated_handler(self, request: httpx.Request) -> httpx.Response:
        self.entered.set()
        await self.gate.wait()
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.gated_handler)


class BrowserStub:
    def __init__(self, result: AuthTokens | None = None, delay: float = 0.0, error: Exception | None = None):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self, settings) -> AuthTokens | None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def tokens(sid: str = "sid_value", csrf: str = "csrf_old", extracted_at: float = NOW) -> AuthTokens:
    return AuthTokens(
        cookies={**VALID_COOKIES, "SID": sid},
        csrf_token=csrf,
        session_id="12345",
        extracted_at=extracted_at,
    )


@pytest.fixture
def page():
    return LandingPage()


@pytest.fixture
def browser():
    return BrowserStub()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cdp_settings(settings):
    return replace(settings, cdp_enabled=True)


@pytest.fixture
def manager(store, cdp_settings, page, browser, clock):
    return AuthManager(
        store,
        cdp_settings,
        browser_refresher=browser,
        transport=page.transport,
        clock=clock,
    )


class TestEnsureValid:
    """Loading stored credentials before calls."""

    @pytest.mark.asyncio
    async def test_fresh_stored_tokens_need_no_network(self, manager, store, page, browser):
        store.save(tokens())

        for _ in range(5):
            assert await manager.ensure_valid() is True

        assert isinstance(manager.state, Authenticated)
        assert page.requests == []
        assert browser.calls == 0

    @pytest.mark.asyncio
    async def test_missing_sapisid_skips_token_refresh(self, manager, store, page, browser):
        incomplete = tokens()
        del incomplete.cookies["SAPISID"]
        store.save(incomplete)
        browser.result = tokens(sid="from_browser")

        assert await manager.ensure_valid() is True

        assert page.requests == []
        assert browser.calls == 1
        assert manager.tokens.cookies["SID"] == "from_browser"
        assert store.load().cookies["SID"] == "from_browser"

    @pytest.mark.asyncio
    async def test_stored_tokens_without_csrf_are_completed(self, manager, store, page):
        store.save(tokens(csrf=""))

        assert await manager.ensure_valid() is True

        assert len(page.requests) == 1
        assert manager.tokens.csrf_token == "fresh_csrf"
        assert manager.tokens.session_id == "-4242"
        assert manager.build_label == "boq_labs-tailwind-frontend_20990101.00_p0"

    @pytest.mark.asyncio
    async def test_aging_token_is_refreshed_proactively(self, manager, store, page, clock):
        store.save(tokens())
        await manager.ensure_valid()

        clock.now += 4 * 60 * 60
        assert manager.needs_token_refresh()
        assert await manager.ensure_valid() is True

        assert len(page.requests) == 1
        assert manager.tokens.csrf_token == "fresh_csrf"
        assert manager.tokens.extracted_at == clock.now
        assert manager.state.csrf_refreshed_at == clock.now

    @pytest.mark.asyncio
    async def test_failed_proactive_refresh_keeps_current_token(self, manager, store, page, clock):
        store.save(tokens())
        await manager.ensure_valid()
        page.status = 500

        clock.now += 4 * 60 * 60
        assert await manager.ensure_valid() is True
        assert manager.tokens.csrf_token == "csrf_old"

    @pytest.mark.asyncio
    async def test_cookies_past_max_age_are_not_loaded(self, manager, store, page, browser):
        store.save(tokens(extracted_at=NOW - 200 * 3600))

        assert await manager.ensure_valid() is False

        assert page.requests == []
        assert browser.calls == 1
        assert isinstance(manager.state, Unauthenticated)

    @pytest.mark.asyncio
    async def test_expired_state_triggers_recovery(self, manager, store, page, browser):
        store.save(tokens())
        await manager.ensure_valid()
        manager._set_state(Expired(manager.tokens))
        page.dead_sids = ("sid_value",)
        browser.result = tokens(sid="new")

        assert await manager.ensure_valid() is True
        assert browser.calls == 1


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_login_redirect_fails_refresh(self, manager, store, page):
        page.dead_sids = ("sid_value",)
        store.save(tokens())
        await manager.ensure_valid()

        assert await manager.refresh_tokens() is False
        assert manager.tokens.csrf_token == "csrf_old"

    @pytest.mark.asyncio
    async def test_page_without_token_fails_refresh(self, store, settings, clock):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html></html>"))
        manager = AuthManager(store, settings, transport=transport, clock=clock)
        store.save(tokens())
        await manager.ensure_valid()

        assert await manager.refresh_tokens() is False

    @pytest.mark.asyncio
    async def test_fetch_raises_on_login_redirect(self, manager, page):
        page.dead_sids = ("sid_value",)
        with pytest.raises(AuthenticationError, match="sign-in"):
            await manager._fetch_page_tokens(tokens())

    @pytest.mark.asyncio
    async def test_refresh_persists_new_token(self, manager, store):
        store.save(tokens())
        await manager.ensure_valid()

        assert await manager.refresh_tokens() is True
        assert store.load().csrf_token == "fresh_csrf"

    @pytest.mark.asyncio
    async def test_no_tokens_means_no_fetch(self, manager, page):
        assert await manager.refresh_tokens() is False
        assert page.requests == []


class TestLayeredRefresh:
    """Recovery layers run cheapest first and stop at the first success."""

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_single_flight(self, manager, browser):
        browser.delay = 0.05
        browser.result = tokens(sid="shared")

        results = await asyncio.gather(*(manager.refresh() for _ in range(8)))

        assert results == [True] * 8
        assert browser.calls == 1
        assert manager.tokens.cookies["SID"] == "shared"

    @pytest.mark.asyncio
    async def test_concurrent_failed_refresh_is_single_flight(self, manager, browser):
        browser.delay = 0.05

        results = await asyncio.gather(*(manager.refresh() for _ in range(5)))

        assert results == [False] * 5
        assert browser.calls == 1
        assert isinstance(manager.state, Unauthenticated)

    @pytest.mark.asyncio
    async def test_sequential_refreshes_run_again(self, manager, browser):
        await manager.refresh()
        await manager.refresh()
        assert browser.calls == 2

    @pytest.mark.asyncio
    async def test_token_refresh_layer_wins_first(self, manager, store, page, browser):
        store.save(tokens())
        await manager.ensure_valid()

        assert await manager.refresh() is True

        assert len(page.requests) == 1
        assert browser.calls == 0
        assert manager.tokens.csrf_token == "fresh_csrf"

    @pytest.mark.asyncio
    async def test_store_reload_layer_picks_up_new_cookies(self, manager, store, page, browser):
        store.save(tokens(sid="old"))
        await manager.ensure_valid()
        page.dead_sids = ("old",)
        store.save(tokens(sid="new"))

        assert await manager.refresh() is True

        assert browser.calls == 0
        assert manager.tokens.cookies["SID"] == "new"
        assert manager.tokens.csrf_token == "fresh_csrf"

    @pytest.mark.asyncio
    async def test_browser_layer_after_dead_cookies(self, manager, store, page, browser):
        store.save(tokens(sid="old"))
        await manager.ensure_valid()
        page.dead_sids = ("old",)
        browser.result = tokens(sid="from_browser", csrf="browser_csrf")

        assert await manager.refresh() is True

        assert browser.calls == 1
        assert manager.tokens.csrf_token == "browser_csrf"
        assert store.load().cookies["SID"] == "from_browser"

    @pytest.mark.asyncio
    async def test_exhausted_with_cookies_is_expired(self, manager, store, page, browser):
        store.save(tokens(sid="old"))
        await manager.ensure_valid()
        page.dead_sids = ("old",)

        assert await manager.refresh() is False

        assert isinstance(manager.state, Expired)
        assert manager.tokens.cookies["SID"] == "old"
        assert browser.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_without_cookies_is_unauthenticated(self, manager, browser):
        assert await manager.refresh() is False
        assert isinstance(manager.state, Unauthenticated)

    @pytest.mark.asyncio
    async def test_layer_exception_is_contained(self, manager, browser):
        browser.error = RuntimeError("devtools went away")
        assert await manager.refresh() is False

    @pytest.mark.asyncio
    async def test_browser_tokens_without_required_cookies_are_rejected(self, manager, browser):
        browser.result = AuthTokens(cookies={"SID": "only"})
        assert await manager.refresh() is False
        assert manager.tokens is None

    @pytest.mark.asyncio
    async def test_cdp_disabled_skips_browser(self, store, settings, page):
        browser = BrowserStub(result=tokens())
        manager = AuthManager(store, settings, browser_refresher=browser, transport=page.transport)

        assert await manager.refresh() is False
        assert browser.calls == 0


class TestListeners:
    @pytest.mark.asyncio
    async def test_listeners_see_transitions(self, manager, store):
        seen = []
        manager.subscribe(lambda state: seen.append(state.name))
        store.save(tokens())

        await manager.ensure_valid()
        manager.reset()

        assert seen == ["authenticated", "unauthenticated"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(self, manager, store):
        seen = []

        def broken(state):
            raise RuntimeError("listener bug")

        manager.subscribe(broken)
        manager.subscribe(lambda state: seen.append(state.name))
        store.save(tokens())

        assert await manager.ensure_valid() is True
        assert seen == ["authenticated"]

    def test_unsubscribe(self, manager):
        seen = []
        unsubscribe = manager.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        manager.reset()
        assert seen == []


class TestManualTokens:
    @pytest.mark.asyncio
    async def test_missing_cookie_is_rejected(self, manager, store):
        cookies = {k: v for k, v in VALID_COOKIES.items() if k != "SAPISID"}
        with pytest.raises(ValidationError, match="SAPISID"):
            await manager.save_manual_tokens(cookies)
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_saves_essential_cookies_with_given_token(self, manager, store, page):
        saved = await manager.save_manual_tokens(
            {**VALID_COOKIES, "_ga": "x"}, csrf_token="manual", session_id="77"
        )

        assert "_ga" not in saved.cookies
        assert saved.csrf_token == "manual"
        assert page.requests == []
        assert store.load() == saved
        assert manager.is_authenticated

    @pytest.mark.asyncio
    async def test_fetches_token_when_not_given(self, manager, page):
        saved = await manager.save_manual_tokens(dict(VALID_COOKIES))

        assert len(page.requests) == 1
        assert saved.csrf_token == "fresh_csrf"


class TestRequireTokens:
    @pytest.mark.asyncio
    async def test_no_credentials(self, store, settings):
        manager = AuthManager(store, settings)
        with pytest.raises(AuthMissingError):
            await manager.require_tokens()

    @pytest.mark.asyncio
    async def test_returns_tokens(self, manager, store):
        store.save(tokens())
        assert (await manager.require_tokens()).csrf_token == "csrf_old"

    @pytest.mark.asyncio
    async def test_expired_credentials(self, manager, store, page):
        store.save(tokens(sid="old"))
        await manager.ensure_valid()
        page.dead_sids = ("old",)
        await manager.refresh()

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.require_tokens()
        assert not isinstance(exc_info.value, AuthMissingError)

    def test_describe_has_no_secrets(self, manager):
        info = manager.describe()
        assert info["state"] == "unauthenticated"
        assert info["cdp_enabled"] is True


class TestManualSaveDuringTokenRefresh:
    """A manual save while a landing-page fetch is in flight keeps the new cookies."""

    @pytest.fixture
    def gated(self, store, settings, clock):
        page = GatedLandingPage()
        return page, AuthManager(store, settings, transport=page.transport, clock=clock)

    @pytest.mark.asyncio
    async def test_manual_save_with_token_wins(self, gated, store):
        page, manager = gated
        store.save(tokens(sid="old", extracted_at=NOW - 5 * 3600))

        proactive = asyncio.ensure_future(manager.ensure_valid())
        await page.entered.wait()
        manual = asyncio.ensure_future(
            manager.save_manual_tokens({**VALID_COOKIES, "SID": "manual_new"}, csrf_token="given")
        )
        await asyncio.sleep(0)
        page.gate.set()

        assert await proactive is True
        saved = await manual

        assert saved.cookies["SID"] == "manual_new"
        assert manager.tokens.cookies["SID"] == "manual_new"
        assert manager.tokens.csrf_token == "given"
        assert store.load().cookies["SID"] == "manual_new"

    @pytest.mark.asyncio
    async def test_manual_save_without_token_fetches_with_new_cookies(self, gated, store):
        page, manager = gated
        store.save(tokens(sid="old", extracted_at=NOW - 5 * 3600))

        proactive = asyncio.ensure_future(manager.ensure_valid())
        await page.entered.wait()
        manual = asyncio.ensure_future(manager.save_manual_tokens({**VALID_COOKIES, "SID": "manual_new"}))
        await asyncio.sleep(0)
        page.gate.set()

        await proactive
        saved = await manual

        assert saved.cookies["SID"] == "manual_new"
        assert saved.csrf_token == "fresh_csrf"
        assert "SID=manual_new;" in page.requests[-1].headers["cookie"]
        assert store.load().cookies["SID"] == "manual_new"

    @pytest.mark.asyncio
    async def test_fetched_token_is_dropped_when_cookies_change(self, gated, store):
        page, manager = gated
        store.save(tokens(sid="old"))
        await manager.ensure_valid()

        pending = asyncio.ensure_future(manager.refresh_tokens())
        await page.entered.wait()
        swapped = tokens(sid="swapped", csrf="swapped_csrf")
        manager._adopt(swapped, csrf_refreshed_at=NOW)
        page.gate.set()

        assert await pending is True
        assert manager.tokens == swapped
        assert store.load().cookies["SID"] == "old"
        assert store.load().csrf_token == "csrf_old"
