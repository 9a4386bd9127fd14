"""Response decoding for the batchexecute gateway.

Response format::

    )]}'
    <byte_count>
    [["wrb.fr", "<rpc_id>", "<payload_json>", null, null, null, "generic"], ...]
    <byte_count>
    ...

Nothing here is schema-validated. Positions are read through small accessors
that return ``None`` for anything missing or mistyped, so an unexpected
shape degrades to "no result" instead of an ``IndexError``. The one shape
that is never ignored is the auth sentinel (``16``) in the error slot.
"""

import json
from collections.abc import Iterator
from typing import Any, Union

from . import constants
from .encoding import strip_xssi_prefix
from .errors import AuthenticationError, RPCError

JSONValue = Union[None, bool, int, float, str, list["JSONValue"], dict[str, "JSONValue"]]


# =============================================================================
# Dynamic JSON accessors
# =============================================================================

def at(value: JSONValue, *path: int | str) -> JSONValue:
    """Follow list indexes and dict keys; ``None`` as soon as a step is missing."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(value, list) or not -len(value) <= key < len(value):
                return None
            value = value[key]
        else:
            if not isinstance(value, dict):
                return None
            value = value.get(key)
    return value


def at_list(value: JSONValue, *path: int | str) -> list[JSONValue] | None:
    found = at(value, *path)
    return found if isinstance(found, list) else None


def at_str(value: JSONValue, *path: int | str) -> str | None:
    found = at(value, *path)
    return found if isinstance(found, str) else None


def at_int(value: JSONValue, *path: int | str) -> int | None:
    found = at(value, *path)
    # bool is an int subclass; the wire never means True as 1
    if isinstance(found, int) and not isinstance(found, bool):
        return found
    return None


# =============================================================================
# Envelope tuple accessors
# [marker, rpc_id, payload, ?, ?, error_codes, error_tag]
# =============================================================================

def is_envelope(item: JSONValue) -> bool:
    """A well-formed response tuple: a list of 3+ positions led by ``wrb.fr``."""
    return (
        isinstance(item, list)
        and len(item) >= constants.ENVELOPE_MIN_LENGTH
        and item[0] == constants.RESPONSE_MARKER
    )


def envelope_rpc_id(item: JSONValue) -> str | None:
    return at_str(item, 1)


def envelope_payload(item: JSONValue) -> JSONValue:
    return at(item, constants.ENVELOPE_PAYLOAD_INDEX)


def envelope_error_codes(item: JSONValue) -> list[int]:
    """Numeric sentinels in the error slot, whether listed or bare."""
    slot = at(item, constants.ENVELOPE_ERROR_INDEX)
    if isinstance(slot, int) and not isinstance(slot, bool):
        return [slot]
    if isinstance(slot, list):
        return [c for c in slot if isinstance(c, int) and not isinstance(c, bool)]
    return []


def raise_for_envelope_error(item: JSONValue) -> None:
    """Raise if the envelope carries an error sentinel.

    Raises:
        AuthenticationError: Sentinel 16, regardless of the other positions.
        RPCError: Any other numeric sentinel; its meaning is call-specific.
    """
    codes = envelope_error_codes(item)
    if constants.RPC_ERROR_AUTH in codes:
        raise AuthenticationError("RPC Error 16: Authentication expired")
    if codes:
        rpc_id = envelope_rpc_id(item)
        raise RPCError(
            f"RPC Error {codes[0]}" + (f" from {rpc_id}" if rpc_id else ""),
            rpc_code=codes[0],
        )


# =============================================================================
# Framing
# =============================================================================

def _is_byte_count(line: str) -> bool:
    return line.isascii() and line.isdigit()


def iter_chunks(response_text: str) -> Iterator[JSONValue]:
    """Yield each decoded JSON chunk of a framed response.

    A bare integer line announces the byte length of the next line, which is
    then parsed; any other line is parsed directly. Lines that are not JSON
    under either reading are skipped.
    """
    lines = strip_xssi_prefix(response_text).strip().split("\n")
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if not line:
            i += 1
            continue

        if _is_byte_count(line):
            i += 1
            if i >= len(lines):
                break
            line = lines[i]

        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            pass
        i += 1


def parse_response(response_text: str) -> list[JSONValue]:
    """Decode every chunk of a framed response."""
    return list(iter_chunks(response_text))


def _decode_payload(payload: JSONValue) -> Any:
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            return payload
    return payload


def extract_rpc_result(parsed_response: list[JSONValue], rpc_id: str) -> Any:
    """Extract the result for a specific RPC ID from the parsed chunks.

    Returns the decoded payload, the raw payload string when it is not JSON,
    or ``None`` when no envelope answers ``rpc_id``.
    """
    for chunk in parsed_response:
        if not isinstance(chunk, list):
            continue
        for item in chunk:
            if is_envelope(item) and envelope_rpc_id(item) == rpc_id:
                raise_for_envelope_error(item)
                return _decode_payload(envelope_payload(item))
    return None


def decode_response(response_text: str, rpc_id: str) -> Any:
    """Strip framing and return the payload answering ``rpc_id``."""
    return extract_rpc_result(parse_response(response_text), rpc_id)
