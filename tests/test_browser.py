"""Tests for DevTools credential extraction, with the DevTools calls stubbed."""

import pytest

from conftest import PAGE_HTML, VALID_COOKIES
from notebooklm_rpc import browser
from notebooklm_rpc.config import Settings

CHROME_COOKIES = [{"name": k, "value": v, "domain": ".google.com"} for k, v in VALID_COOKIES.items()]


@pytest.fixture
def devtools(monkeypatch):
    """A signed-in NotebookLM tab on a debuggable browser."""
    state = {"url": "https://notebooklm.google.com/", "cookies": CHROME_COOKIES}
    monkeypatch.setattr(browser, "get_chrome_debugger_url", lambda port, host: "ws://browser")
    monkeypatch.setattr(
        browser,
        "find_or_create_notebooklm_page",
        lambda port, host, base_url: {"webSocketDebuggerUrl": "ws://page"},
    )
    monkeypatch.setattr(browser, "get_current_url", lambda ws_url: state["url"])
    monkeypatch.setattr(browser, "get_page_cookies", lambda ws_url: state["cookies"])
    monkeypatch.setattr(browser, "get_page_html", lambda ws_url: PAGE_HTML)
    return state


def test_check_if_logged_in_by_url():
    assert browser.check_if_logged_in_by_url("https://notebooklm.google.com/notebook/x")
    assert not browser.check_if_logged_in_by_url("https://accounts.google.com/ServiceLogin?continue=notebooklm.google.com")
    assert not browser.check_if_logged_in_by_url("about:blank")


def test_extracts_cookies_and_tokens(devtools):
    tokens = browser.extract_tokens_from_browser(Settings())

    assert tokens.cookies == VALID_COOKIES
    assert tokens.csrf_token == "fresh_csrf"
    assert tokens.session_id == "-4242"
    assert tokens.extracted_at > 0


def test_signed_out_browser(devtools):
    devtools["url"] = "https://accounts.google.com/ServiceLogin"
    assert browser.extract_tokens_from_browser(Settings()) is None


def test_missing_cookies(devtools):
    devtools["cookies"] = CHROME_COOKIES[:2]
    assert browser.extract_tokens_from_browser(Settings()) is None


def test_no_debuggable_browser(monkeypatch):
    monkeypatch.setattr(browser, "get_chrome_debugger_url", lambda port, host: None)
    assert browser.extract_tokens_from_browser(Settings()) is None


@pytest.mark.asyncio
async def test_refresh_via_browser_never_raises(monkeypatch):
    def explode(settings):
        raise ConnectionResetError("websocket closed")

    monkeypatch.setattr(browser, "extract_tokens_from_browser", explode)
    assert await browser.refresh_via_browser(Settings()) is None


@pytest.mark.asyncio
async def test_refresh_via_browser_returns_tokens(devtools):
    tokens = await browser.refresh_via_browser(Settings())
    assert tokens.csrf_token == "fresh_csrf"


def test_debug_command_mentions_port(monkeypatch):
    monkeypatch.setattr(browser, "_chrome_executable", lambda: "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome")
    command = browser.browser_debug_command(9333)
    assert "--remote-debugging-port=9333" in command
    assert command.startswith("/Applications/Google\\ Chrome.app")
