"""Local record of query/answer turns, kept so follow-ups can send history.

File format (``conversations.json``)::

    {"<conversation_id>": [{"query": ..., "answer": ..., "turnNumber": 1}, ...]}

Conversation ids are generated client-side; the service never assigns them.
"""

import json
import logging
from pathlib import Path

from .streaming import ConversationTurn

logger = logging.getLogger("notebooklm_rpc.api")


class ConversationStore:
    """Append-only conversation turns, persisted as one JSON file."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path).expanduser() if path is not None else None
        self._turns: dict[str, list[ConversationTurn]] = self._load()

    def _load(self) -> dict[str, list[ConversationTurn]]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable conversation file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}

        turns: dict[str, list[ConversationTurn]] = {}
        for conversation_id, records in data.items():
            if not isinstance(records, list):
                continue
            try:
                turns[conversation_id] = [ConversationTurn.from_dict(r) for r in records]
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning(f"Skipping malformed conversation {conversation_id}")
        return turns

    def _save(self) -> None:
        if self.path is None:
            return
        data = {
            conversation_id: [
                {"query": t.query, "answer": t.answer, "turnNumber": t.turn_number}
                for t in turns
            ]
            for conversation_id, turns in self._turns.items()
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save conversations to {self.path}: {e}")

    def get(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(conversation_id, []))

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._turns

    def append(self, conversation_id: str, query: str, answer: str) -> ConversationTurn:
        """Record a turn; its number is one past the last recorded turn."""
        turns = self._turns.setdefault(conversation_id, [])
        turn = ConversationTurn(query=query, answer=answer, turn_number=len(turns) + 1)
        turns.append(turn)
        self._save()
        return turn

    def clear(self, conversation_id: str) -> bool:
        if conversation_id not in self._turns:
            return False
        del self._turns[conversation_id]
        self._save()
        return True
