"""Credential extraction from a running Chrome over the DevTools protocol.

Attach-only: the browser must already be running with
``--remote-debugging-port``. Nothing here launches a browser or touches a
profile directory; when no debuggable browser is listening the caller gets
``None`` and a hint (``browser_debug_command``) it can show to the user.
"""

import asyncio
import json
import logging
import platform
import shutil
import time
from pathlib import Path
from urllib.parse import quote

import httpx
import websocket

from . import constants
from .auth import (
    AuthTokens,
    extract_csrf_from_page_source,
    extract_session_id_from_page,
    parse_cookies_from_chrome_format,
    validate_cookies,
)
from .config import Settings

logger = logging.getLogger("notebooklm_rpc.auth")

NOTEBOOKLM_HOST = "notebooklm.google.com"

_LINUX_CHROME_CANDIDATES = ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"]


def _devtools_base(host: str, port: int) -> str:
    return f"http://{host}:{port}"


def get_chrome_debugger_url(port: int = 9222, host: str = "localhost") -> str | None:
    """Get the WebSocket debugger URL for Chrome."""
    try:
        response = httpx.get(f"{_devtools_base(host, port)}/json/version", timeout=5)
        return response.json().get("webSocketDebuggerUrl")
    except (httpx.HTTPError, ValueError):
        return None


def get_chrome_pages(port: int = 9222, host: str = "localhost") -> list[dict]:
    """Get list of open pages in Chrome."""
    try:
        response = httpx.get(f"{_devtools_base(host, port)}/json", timeout=5)
        return response.json()
    except (httpx.HTTPError, ValueError):
        return []


def find_or_create_notebooklm_page(port: int = 9222, host: str = "localhost", base_url: str = constants.BASE_URL) -> dict | None:
    """Find an existing NotebookLM tab or open a new one."""
    for page in get_chrome_pages(port, host):
        if NOTEBOOKLM_HOST in page.get("url", ""):
            return page

    try:
        response = httpx.put(
            f"{_devtools_base(host, port)}/json/new?{quote(base_url + '/', safe='')}",
            timeout=15,
        )
    except httpx.HTTPError as e:
        logger.debug(f"Failed to open NotebookLM tab: {e}")
        return None
    if response.status_code == 200 and response.text.strip():
        return response.json()
    logger.debug(f"Failed to open NotebookLM tab: status={response.status_code}")
    return None


def execute_cdp_command(ws_url: str, method: str, params: dict | None = None) -> dict:
    """Execute a CDP command via WebSocket."""
    ws = websocket.create_connection(ws_url, timeout=30)
    try:
        command = {"id": 1, "method": method, "params": params or {}}
        ws.send(json.dumps(command))

        while True:
            response = json.loads(ws.recv())
            if response.get("id") == 1:
                return response.get("result", {})
    finally:
        ws.close()


def get_page_cookies(ws_url: str) -> list[dict]:
    result = execute_cdp_command(ws_url, "Network.getCookies")
    return result.get("cookies", [])


def _evaluate(ws_url: str, expression: str) -> str:
    execute_cdp_command(ws_url, "Runtime.enable")
    result = execute_cdp_command(ws_url, "Runtime.evaluate", {"expression": expression})
    return result.get("result", {}).get("value", "")


def get_page_html(ws_url: str) -> str:
    return _evaluate(ws_url, "document.documentElement.outerHTML")


def get_current_url(ws_url: str) -> str:
    """Get the current page URL via CDP (cheap operation, no HTML parsing)."""
    return _evaluate(ws_url, "window.location.href")


def check_if_logged_in_by_url(url: str) -> bool:
    """Check login status by URL.

    If NotebookLM redirects to accounts.google.com, user is not logged in.
    If URL stays on notebooklm.google.com, user is authenticated.
    """
    if constants.LOGIN_DOMAIN in url:
        return False
    return NOTEBOOKLM_HOST in url


def extract_tokens_from_browser(settings: Settings) -> AuthTokens | None:
    """Blocking CDP flow: find the tab, check login, read cookies and tokens."""
    if not get_chrome_debugger_url(settings.cdp_port, settings.cdp_host):
        logger.info(f"No debuggable browser on {settings.cdp_host}:{settings.cdp_port}")
        return None

    page = find_or_create_notebooklm_page(settings.cdp_port, settings.cdp_host, settings.base_url)
    ws_url = page.get("webSocketDebuggerUrl") if page else None
    if not ws_url:
        return None

    # A freshly opened tab needs a moment before location is meaningful
    current_url = get_current_url(ws_url)
    if not current_url or current_url == "about:blank":
        time.sleep(3)
        current_url = get_current_url(ws_url)
    if not check_if_logged_in_by_url(current_url):
        logger.info("Browser session is not signed in to NotebookLM")
        return None

    cookies = parse_cookies_from_chrome_format(get_page_cookies(ws_url))
    if not validate_cookies(cookies):
        logger.info("Browser session is missing required cookies")
        return None

    html = get_page_html(ws_url)
    return AuthTokens(
        cookies=cookies,
        csrf_token=extract_csrf_from_page_source(html) or "",
        session_id=extract_session_id_from_page(html) or "",
        extracted_at=time.time(),
    )


async def refresh_via_browser(settings: Settings) -> AuthTokens | None:
    """Extract a fresh credential set from a debuggable browser.

    Never raises; any failure is reported as ``None``.
    """
    try:
        return await asyncio.to_thread(extract_tokens_from_browser, settings)
    except Exception as e:
        logger.warning(f"Browser credential extraction failed: {e}")
        return None


def _chrome_executable() -> str | None:
    system = platform.system()
    if system == "Darwin":
        return "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
    if system == "Windows":
        return r"C:\Program Files\Google\Chrome\Application\chrome.exe"
    if system == "Linux":
        for candidate in _LINUX_CHROME_CANDIDATES:
            if shutil.which(candidate):
                return candidate
    return None


def browser_debug_command(port: int = 9222) -> str:
    """Command line a user can run to start a debuggable Chrome."""
    executable = _chrome_executable()
    if not executable:
        return "No compatible browser found. Install Chrome or Chromium."
    profile_dir = Path.home() / ".notebooklm-rpc" / "chrome-profile"
    escaped = executable.replace(" ", "\\ ")
    return (
        f"{escaped} --remote-debugging-port={port} "
        f'--user-data-dir="{profile_dir}" --remote-allow-origins=*'
    )
