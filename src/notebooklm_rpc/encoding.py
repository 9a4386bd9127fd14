"""Request encoding for the batchexecute gateway.

The gateway is strict about two things plain defaults get wrong: JSON must
escape every non-ASCII character to ``\\uXXXX``, and form values must be
percent-encoded with nothing left "safe" (``!'()*`` included).
"""

import json
import urllib.parse
from typing import Any

from . import constants


def json_dumps_ascii(data: Any) -> str:
    """Compact JSON with all non-ASCII characters escaped (Chrome's wire format)."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=True)


def strict_quote(value: str) -> str:
    """Percent-encode everything except alphanumerics and ``-_.~``."""
    return urllib.parse.quote(value, safe="")


def _form_body(f_req_json: str, csrf_token: str | None) -> str:
    parts = [f"f.req={strict_quote(f_req_json)}"]
    if csrf_token:
        parts.append(f"at={strict_quote(csrf_token)}")
    # Trailing & matches what the web app sends
    return "&".join(parts) + "&"


def build_request_body(rpc_id: str, params: Any, csrf_token: str | None = None) -> str:
    """Build the form body for a single batchexecute call."""
    params_json = json_dumps_ascii(params)
    f_req = [[[rpc_id, params_json, None, constants.GENERIC_TAG]]]
    return _form_body(json_dumps_ascii(f_req), csrf_token)


def build_query_body(params: Any, csrf_token: str | None) -> str:
    """Build the form body for the streaming answer endpoint."""
    params_json = json_dumps_ascii(params)
    return _form_body(json_dumps_ascii([None, params_json]), csrf_token)


def build_batch_url(
    base_url: str,
    rpc_id: str,
    source_path: str = "/",
    *,
    build_label: str,
    locale: str = constants.DEFAULT_LOCALE,
    session_id: str | None = None,
) -> str:
    """Build the batchexecute URL with its routing query string."""
    params = {
        "rpcids": rpc_id,
        "source-path": source_path,
        "bl": build_label,
        "hl": locale,
        "rt": "c",
    }
    if session_id:
        params["f.sid"] = session_id
    return f"{base_url}?{urllib.parse.urlencode(params)}"


def build_query_url(
    query_url: str,
    req_id: int,
    *,
    build_label: str,
    locale: str = constants.DEFAULT_LOCALE,
    session_id: str | None = None,
) -> str:
    params = {
        "bl": build_label,
        "hl": locale,
        "_reqid": str(req_id),
        "rt": "c",
    }
    if session_id:
        params["f.sid"] = session_id
    return f"{query_url}?{urllib.parse.urlencode(params)}"


def strip_xssi_prefix(text: str) -> str:
    """Remove the anti-XSSI prefix ``)]}'`` if present."""
    if text.startswith(constants.XSSI_PREFIX):
        return text[len(constants.XSSI_PREFIX):]
    return text


def decode_request_body(body: str) -> dict[str, Any]:
    """Decode a form body back into its RPC id and params, for debug logging."""
    result: dict[str, Any] = {}
    parsed = urllib.parse.parse_qs(body.rstrip("&"))

    if "f.req" in parsed:
        f_req_raw = parsed["f.req"][0]
        try:
            f_req = json.loads(f_req_raw)
        except json.JSONDecodeError:
            result["f.req"] = f_req_raw
        else:
            result["f.req"] = f_req
            rpc_call = None
            if isinstance(f_req, list) and f_req and isinstance(f_req[0], list) and f_req[0]:
                rpc_call = f_req[0][0]
            if isinstance(rpc_call, list) and len(rpc_call) >= 2:
                result["rpc_id"] = rpc_call[0]
                params_str = rpc_call[1]
                if isinstance(params_str, str):
                    try:
                        result["params"] = json.loads(params_str)
                    except json.JSONDecodeError:
                        result["params"] = params_str

    # Never log the token itself
    if "at" in parsed:
        result["at"] = "(csrf_token)"

    return result


def parse_url_params(url: str) -> dict[str, Any]:
    """Parse URL query parameters, flattening single values."""
    parsed = urllib.parse.urlparse(url)
    params = urllib.parse.parse_qs(parsed.query)
    return {k: v[0] if len(v) == 1 else v for k, v in params.items()}
