import json
import time

import pytest

from notebooklm_rpc.auth import AuthTokens, TokenStore
from notebooklm_rpc.config import Settings

VALID_COOKIES = {
    "SID": "sid_value",
    "HSID": "hsid_value",
    "SSID": "ssid_value",
    "APISID": "apisid_value",
    "SAPISID": "sapisid_value",
}

PAGE_HTML = (
    '<html><script>WIZ_global_data = {"SNlM0e":"fresh_csrf",'
    '"FdrFJe":"-4242","cfb2h":"boq_labs-tailwind-frontend_20990101.00_p0"};</script></html>'
)


def frame(*chunks) -> str:
    """Wrap JSON chunks in the anti-XSSI prefix and byte-count framing."""
    body = ")]}'\n"
    for chunk in chunks:
        line = json.dumps(chunk)
        body += f"{len(line)}\n{line}\n"
    return body


def rpc_response(rpc_id: str, payload) -> str:
    return frame([["wrb.fr", rpc_id, json.dumps(payload), None, None, None, "generic"]])


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=tmp_path, cdp_enabled=False)


@pytest.fixture
def store(tmp_path):
    return TokenStore(tmp_path / "auth.json")


@pytest.fixture
def fresh_tokens():
    return AuthTokens(
        cookies=dict(VALID_COOKIES),
        csrf_token="csrf_old",
        session_id="12345",
        extracted_at=time.time(),
    )
