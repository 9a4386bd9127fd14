"""Decoder for the streaming answer endpoint.

The query endpoint reuses the batchexecute framing but nests a second JSON
document inside each envelope::

    [["wrb.fr", null, "[[\\"<text>\\", null, [...], null, [..., <type>]]]", ...]]

``<type>`` is 1 for the final answer and anything else for an intermediate
"thinking" step. Upstream streams growing partial fragments, so the decoder
keeps the longest fragment of each kind and prefers an answer over
reasoning regardless of length. This is inferred from how fragments
accumulate, not a documented guarantee of the service.
"""

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from . import constants
from .codec import JSONValue, at, at_list, is_envelope, iter_chunks, raise_for_envelope_error


@dataclass
class ConversationTurn:
    """A single query/answer pair in a conversation."""

    query: str
    answer: str
    turn_number: int  # 1-indexed

    def to_dict(self) -> dict[str, Any]:
        return {"query": self.query, "answer": self.answer, "turn_number": self.turn_number}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationTurn":
        return cls(
            query=data["query"],
            answer=data["answer"],
            turn_number=int(data.get("turn_number") or data.get("turnNumber") or 0),
        )


@dataclass
class StreamedAnswer:
    """Longest fragments seen for each category."""

    answer: str = ""
    thinking: str = ""

    @property
    def text(self) -> str:
        return self.answer or self.thinking

    def offer(self, text: str, is_answer: bool) -> None:
        if is_answer:
            if len(text) > len(self.answer):
                self.answer = text
        elif len(text) > len(self.thinking):
            self.thinking = text


def _is_content(text: Any) -> bool:
    return isinstance(text, str) and len(text) > constants.MIN_ANSWER_LENGTH


def extract_fragment(item: JSONValue) -> tuple[str, bool] | None:
    """Pull ``(text, is_answer)`` out of one envelope, or ``None``.

    Raises:
        AuthenticationError: If the envelope carries the auth sentinel.
        RPCError: If it carries any other error sentinel.
    """
    if not is_envelope(item):
        return None
    raise_for_envelope_error(item)

    inner_json = at(item, constants.ENVELOPE_PAYLOAD_INDEX)
    if not isinstance(inner_json, str):
        return None
    try:
        inner = json.loads(inner_json)
    except json.JSONDecodeError:
        return None

    first = at(inner, 0)
    if isinstance(first, str):
        return (first, False) if _is_content(first) else None

    text = at(first, 0)
    if not _is_content(text):
        return None

    # Type tag is the last element of position 4
    type_info = at_list(first, 4)
    is_answer = False
    if type_info:
        tag = type_info[-1]
        is_answer = isinstance(tag, int) and not isinstance(tag, bool) and tag == constants.ANSWER_TYPE_ANSWER
    return text, is_answer


def decode_stream(response_text: str) -> StreamedAnswer:
    """Scan every chunk and keep the longest answer and thinking fragments."""
    result = StreamedAnswer()
    for chunk in iter_chunks(response_text):
        if not isinstance(chunk, list):
            continue
        for item in chunk:
            fragment = extract_fragment(item)
            if fragment:
                result.offer(*fragment)
    return result


def decode_query_response(response_text: str) -> str:
    """Return the longest answer, else the longest thinking step, else ``""``."""
    return decode_stream(response_text).text


def build_conversation_history(turns: Iterable[ConversationTurn]) -> list[list[Any]] | None:
    """Flatten prior turns into the history parameter for a follow-up.

    The web app sends, oldest first, ``[answer, null, 2]`` then
    ``[query, null, 1]`` for each turn; any other order and the service
    treats the follow-up as a new conversation.
    """
    history: list[list[Any]] = []
    for turn in turns:
        history.append([turn.answer, None, constants.CHAT_ROLE_ASSISTANT])
        history.append([turn.query, None, constants.CHAT_ROLE_USER])
    return history or None
