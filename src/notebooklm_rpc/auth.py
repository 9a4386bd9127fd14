"""Credentials for NotebookLM and their on-disk store.

Cookies come from a signed-in browser, either pasted as a ``Cookie`` header
or read over the DevTools protocol. The anti-forgery token and session id
are scraped from the landing page and go stale after a few hours, so they
are optional here and refreshed by the auth manager.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote

from . import constants

logger = logging.getLogger("notebooklm_rpc.auth")


@dataclass
class AuthTokens:
    """Authentication tokens for NotebookLM.

    Only cookies are required. CSRF token and session ID are optional because
    they can be auto-extracted from the NotebookLM page when needed.
    """
    cookies: dict[str, str]
    csrf_token: str = ""
    session_id: str = ""
    extracted_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "cookies": self.cookies,
            "csrf_token": self.csrf_token,
            "session_id": self.session_id,
            "extracted_at": self.extracted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuthTokens":
        cookies = data["cookies"]
        if not isinstance(cookies, dict):
            raise TypeError("cookies must be an object")
        return cls(
            cookies={str(k): str(v) for k, v in cookies.items()},
            csrf_token=data.get("csrf_token") or "",
            session_id=data.get("session_id") or "",
            extracted_at=float(data.get("extracted_at") or 0),
        )

    def is_expired(self, max_age_hours: float = 168, now: float | None = None) -> bool:
        """Check if cookies are older than max_age_hours."""
        age_seconds = (time.time() if now is None else now) - self.extracted_at
        return age_seconds > (max_age_hours * 3600)

    @property
    def is_usable(self) -> bool:
        return validate_cookies(self.cookies)

    @property
    def cookie_header(self) -> str:
        """Get cookies as a header string."""
        return "; ".join(f"{k}={v}" for k, v in self.cookies.items())


def validate_cookies(cookies: dict[str, str] | None) -> bool:
    """Check if required cookies are present."""
    if not cookies:
        return False
    return all(cookies.get(name) for name in constants.REQUIRED_COOKIES)


def missing_cookies(cookies: dict[str, str]) -> list[str]:
    return [name for name in constants.REQUIRED_COOKIES if not cookies.get(name)]


def parse_cookie_header(cookie_header: str) -> dict[str, str]:
    """
    Extract cookies from a copy-pasted cookie header value.

    Usage:
    1. Go to notebooklm.google.com in Chrome
    2. Open DevTools > Network tab
    3. Refresh and find any request to notebooklm.google.com
    4. Copy the Cookie header value
    5. Pass it to this function
    """
    cookie_header = cookie_header.strip()
    if cookie_header.lower().startswith("cookie:"):
        cookie_header = cookie_header[len("cookie:"):]

    cookies = {}
    for part in cookie_header.split(";"):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            cookies[key.strip()] = value.strip()
    return cookies


def parse_cookies_from_chrome_format(cookies_list: list[dict]) -> dict[str, str]:
    """Parse cookies from Chrome DevTools format to simple dict."""
    result = {}
    for cookie in cookies_list:
        name = cookie.get("name", "")
        value = cookie.get("value", "")
        if name:
            result[name] = value
    return result


def filter_essential_cookies(cookies: dict[str, str]) -> dict[str, str]:
    """Drop analytics and preference cookies; keep the ones auth needs."""
    return {k: v for k, v in cookies.items() if k in constants.ESSENTIAL_COOKIES}


def _first_match(patterns: tuple[str, ...], text: str) -> str | None:
    for pattern in patterns:
        match = re.search(pattern, text)
        if match:
            return match.group(1)
    return None


def extract_csrf_from_page_source(html: str) -> str | None:
    """Extract CSRF token from page HTML.

    The token is stored in WIZ_global_data.SNlM0e or similar structures.
    """
    return _first_match(constants.CSRF_PATTERNS, html)


def extract_session_id_from_page(html: str) -> str | None:
    """Extract session ID from page HTML."""
    return _first_match(constants.SESSION_ID_PATTERNS, html)


def extract_build_label(html: str) -> str | None:
    return _first_match((constants.BUILD_LABEL_PATTERN,), html)


def extract_csrf_from_request_body(request_body: str) -> str | None:
    """Pull the ``at=`` value out of a captured batchexecute request body."""
    match = re.search(r"(?:^|&)at=([^&]+)", request_body)
    if not match:
        return None
    return unquote(match.group(1))


def extract_session_id_from_url(request_url: str) -> str | None:
    match = re.search(r"f\.sid=(\d+)", request_url)
    return match.group(1) if match else None


class TokenStore:
    """JSON file holding one set of ``AuthTokens``.

    The whole file is rewritten on every save. A missing file and an
    unreadable one are the same thing to callers: ``load()`` returns None.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    def load(self) -> AuthTokens | None:
        if not self.path.exists():
            return None

        try:
            with open(self.path) as f:
                data = json.load(f)
            tokens = AuthTokens.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to load cached tokens from {self.path}: {e}")
            return None

        if tokens.is_expired():
            logger.info("Cached tokens are older than 1 week. They may still work.")
        return tokens

    def save(self, tokens: AuthTokens) -> None:
        """Write the tokens, readable by the owner only."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(tokens.to_dict(), f, indent=2)
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            # Not every filesystem supports POSIX modes
            logger.debug(f"Could not restrict permissions on {self.path}")
        logger.debug(f"Auth tokens cached to {self.path}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def describe(self) -> dict[str, Any]:
        """Summary for status output, without any secret values."""
        tokens = self.load()
        if tokens is None:
            return {"path": str(self.path), "exists": self.path.exists(), "valid": False}
        return {
            "path": str(self.path),
            "exists": True,
            "valid": tokens.is_usable,
            "cookie_count": len(tokens.cookies),
            "has_csrf_token": bool(tokens.csrf_token),
            "has_session_id": bool(tokens.session_id),
            "extracted_at": tokens.extracted_at,
        }
