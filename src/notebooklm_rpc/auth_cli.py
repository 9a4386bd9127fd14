#!/usr/bin/env python3
"""CLI tool to save NotebookLM credentials for the client and MCP server.

Two ways in:

    notebooklm-rpc-auth --file cookies.txt
        Import a Cookie header copied from Chrome DevTools (recommended).

    notebooklm-rpc-auth --browser
        Read cookies and tokens from a Chrome already running with
        --remote-debugging-port (see --port).

Credentials are written to $NOTEBOOKLM_CACHE_DIR/auth.json (default
~/.notebooklm-rpc/auth.json) with owner-only permissions.
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

from .auth import TokenStore, filter_essential_cookies, missing_cookies, parse_cookie_header
from .auth_manager import AuthManager
from .browser import browser_debug_command, extract_tokens_from_browser
from .config import Settings
from .errors import NotebookLMError

COOKIE_INSTRUCTIONS = """\
Follow these steps to extract and save your cookies:

  1. Open Chrome and go to: https://notebooklm.google.com
  2. Make sure you're logged in
  3. Press F12 (or Cmd+Option+I on Mac) to open DevTools
  4. Click the 'Network' tab
  5. In the filter box, type: batchexecute
  6. Click on any notebook to trigger a request
  7. Click on a 'batchexecute' request in the list
  8. In the right panel, find 'Request Headers'
  9. Right-click the 'cookie:' VALUE and select 'Copy value'
 10. Paste it into a text file and save
"""


def read_cookie_file(cookie_file: str) -> str:
    """Read a cookie header from a file, ignoring ``#`` comment lines."""
    with open(Path(cookie_file).expanduser()) as f:
        lines = f.read().splitlines()
    cookie_lines = [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]
    return " ".join(cookie_lines)


async def save_cookie_header(manager: AuthManager, cookie_header: str) -> int:
    """Validate, persist and (if possible) complete tokens for a cookie header."""
    cookies = parse_cookie_header(cookie_header)
    if not cookies:
        print("ERROR: Could not parse any cookies from input.")
        print("Expected format: SID=xxx; HSID=xxx; SSID=xxx; ...")
        return 1

    try:
        tokens = await manager.save_manual_tokens(cookies)
    except NotebookLMError as e:
        print(f"ERROR: {e.message}")
        print(f"Found: {sorted(cookies)}")
        return 1

    print()
    print("=" * 50)
    print("SUCCESS!")
    print("=" * 50)
    print(f"Cookies saved: {len(tokens.cookies)} essential cookies (from {len(cookies)})")
    print(f"CSRF Token: {'Yes' if tokens.csrf_token else 'No (will be fetched on first call)'}")
    print(f"Session ID: {tokens.session_id or 'Will be fetched on first call'}")
    print(f"Cache location: {manager.store.path}")
    return 0


def run_file_cookie_entry(manager: AuthManager, cookie_file: str | None) -> int:
    print("NotebookLM - Cookie File Import")
    print("=" * 50)
    print()

    if not cookie_file:
        print(COOKIE_INSTRUCTIONS)
        try:
            cookie_file = input("Enter the path to your cookie file: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nCancelled.")
            return 1
        if not cookie_file:
            print("ERROR: No file path provided.")
            return 1

    print(f"Reading cookies from: {cookie_file}")
    try:
        cookie_header = read_cookie_file(cookie_file)
    except OSError as e:
        print(f"ERROR: Could not read file: {e}")
        return 1

    if not cookie_header:
        print("ERROR: No cookie string found in file.")
        return 1
    return asyncio.run(save_cookie_header(manager, cookie_header))


def run_browser_entry(manager: AuthManager, settings: Settings) -> int:
    print(f"Connecting to Chrome on {settings.cdp_host}:{settings.cdp_port}...")
    try:
        tokens = extract_tokens_from_browser(settings)
    except Exception as e:
        print(f"ERROR: Chrome DevTools connection failed: {e}")
        tokens = None
    if tokens is None:
        print("ERROR: Could not read credentials from the browser.")
        print()
        print("Start Chrome with remote debugging, sign in to NotebookLM, and retry:")
        print(f"  {browser_debug_command(settings.cdp_port)}")
        print()
        print("Or use file mode instead:  notebooklm-rpc-auth --file")
        return 1

    missing = missing_cookies(tokens.cookies)
    if missing:
        print(f"ERROR: Browser session is missing required cookies: {', '.join(missing)}")
        print("Sign in to NotebookLM in that Chrome window and retry.")
        return 1

    tokens = replace(tokens, cookies=filter_essential_cookies(tokens.cookies))
    manager.store.save(tokens)
    print(f"SUCCESS: {len(tokens.cookies)} essential cookies saved to {manager.store.path}")
    print(f"CSRF Token: {'Yes' if tokens.csrf_token else 'No (will be fetched on first call)'}")
    return 0


def show_tokens(store: TokenStore) -> int:
    if not store.path.exists():
        print("No cached tokens found.")
        return 0
    print(json.dumps(store.describe(), indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Save NotebookLM credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  notebooklm-rpc-auth --file               # Guided file import (recommended)
  notebooklm-rpc-auth --file ~/cookies.txt # Direct file import
  notebooklm-rpc-auth --cookies "SID=...; HSID=..."
  notebooklm-rpc-auth --browser            # Read from a debuggable Chrome
  notebooklm-rpc-auth --show-tokens        # Summarize what is saved

After authentication, start the MCP server with: notebooklm-rpc
        """,
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--file",
        nargs="?",
        const="",
        metavar="PATH",
        help="Import cookies from file. Shows instructions if no path given.",
    )
    source.add_argument("--cookies", metavar="HEADER", help="Cookie header value to import")
    source.add_argument("--browser", action="store_true", help="Extract from Chrome over DevTools")
    source.add_argument("--show-tokens", action="store_true", help="Summarize cached tokens (no secrets)")
    parser.add_argument("--port", type=int, default=None, help="Chrome DevTools port (default: 9222)")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.port is not None:
        settings = replace(settings, cdp_port=args.port)
    store = TokenStore(settings.auth_path)
    manager = AuthManager(store, settings)

    try:
        if args.show_tokens:
            return show_tokens(store)
        if args.cookies:
            return asyncio.run(save_cookie_header(manager, args.cookies))
        if args.browser:
            return run_browser_entry(manager, settings)
        return run_file_cookie_entry(manager, args.file or None)
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
