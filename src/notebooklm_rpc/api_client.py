"""NotebookLM API client (notebooklm.google.com).

Thin async facade over ``RPCTransport``: each method picks an RPC id, builds
the positional params the web app sends, and maps the untyped result into
something a caller can use.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from . import constants
from .auth import TokenStore
from .auth_manager import AuthManager
from .cache import NOTEBOOK_TTL, NOTEBOOKS_TTL, TTLCache, notebook_key, notebooks_key
from .codec import at, at_list, at_str
from .config import Settings
from .conversations import ConversationStore
from .errors import NetworkTimeoutError, ValidationError
from .streaming import build_conversation_history
from .transport import RPCTransport

logger = logging.getLogger("notebooklm_rpc.api")

# Trailing options block the web app sends with create/add-source calls
_CLIENT_OPTIONS = [1, None, None, None, None, None, None, None, None, None, [1]]


def parse_timestamp(ts_array: list | None) -> str | None:
    """Convert [seconds, nanoseconds] timestamp array to ISO format string."""
    if not ts_array or not isinstance(ts_array, list):
        return None

    seconds = ts_array[0]
    if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
        return None
    try:
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _source_entries(sources_data: Any) -> list[dict]:
    """Sources are ``[[source_id], title, metadata, ...]``."""
    sources = []
    for src in sources_data if isinstance(sources_data, list) else []:
        src_id = at_str(src, 0, 0)
        if src_id:
            sources.append({"id": src_id, "title": at_str(src, 1) or "Untitled"})
    return sources


def extract_source_ids(notebook_data: Any) -> list[str]:
    """Source ids from raw notebook data shaped ``[[title, sources, id, ...]]``."""
    return [s["id"] for s in _source_entries(at(notebook_data, 0, 1))]


@dataclass
class Notebook:
    """Represents a NotebookLM notebook."""

    id: str
    title: str
    source_count: int
    sources: list[dict] = field(default_factory=list)
    is_owned: bool = True     # False if shared with the user
    is_shared: bool = False   # True if an owned notebook is shared with others
    created_at: str | None = None
    modified_at: str | None = None

    @property
    def url(self) -> str:
        return f"{constants.BASE_URL}/notebook/{self.id}"

    @property
    def ownership(self) -> str:
        return "owned" if self.is_owned else "shared_with_me"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "source_count": self.source_count,
            "sources": self.sources,
            "url": self.url,
            "ownership": self.ownership,
            "is_shared": self.is_shared,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }

    @classmethod
    def from_rpc(cls, nb_data: Any) -> "Notebook | None":
        """Decode one entry of the list response.

        Layout::

            [0] title
            [1] sources
            [2] notebook id
            [3] emoji or null
            [5] metadata: [ownership, shared, ..., modified(5), ..., created(8)]
        """
        notebook_id = at_str(nb_data, 2)
        if not notebook_id:
            return None

        sources = _source_entries(at(nb_data, 1))
        metadata = at_list(nb_data, 5) or []
        is_owned = True
        if metadata:
            is_owned = metadata[0] == constants.OWNERSHIP_MINE

        return cls(
            id=notebook_id,
            title=at_str(nb_data, 0) or "Untitled",
            source_count=len(sources),
            sources=sources,
            is_owned=is_owned,
            is_shared=bool(at(metadata, 1)),
            created_at=parse_timestamp(at_list(metadata, 8)),
            modified_at=parse_timestamp(at_list(metadata, 5)),
        )


class NotebookLMClient:
    """Client for the NotebookLM internal API."""

    def __init__(
        self,
        transport: RPCTransport,
        *,
        conversations: ConversationStore | None = None,
        cache: TTLCache | None = None,
    ):
        self.transport = transport
        self.conversations = conversations if conversations is not None else ConversationStore()
        self.cache = cache if cache is not None else TTLCache()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> "NotebookLMClient":
        """Wire up store, auth manager and transport from settings."""
        settings = settings or Settings.from_env()
        auth = AuthManager(TokenStore(settings.auth_path), settings, transport=http_transport)
        return cls(
            RPCTransport(auth, settings, transport=http_transport),
            conversations=ConversationStore(settings.conversations_path),
        )

    @property
    def auth(self) -> AuthManager:
        return self.transport.auth

    @property
    def settings(self) -> Settings:
        return self.transport.settings

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "NotebookLMClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Notebooks
    # =========================================================================

    async def list_notebooks(self, use_cache: bool = True) -> list[Notebook]:
        """List all notebooks."""
        if use_cache:
            cached = self.cache.get(notebooks_key())
            if cached is not None:
                return cached

        result = await self.transport.call(constants.RPC_LIST_NOTEBOOKS, [None, 1, None, [2]])

        notebooks = []
        if isinstance(result, list) and result:
            notebook_list = result[0] if isinstance(result[0], list) else result
            for nb_data in notebook_list:
                notebook = Notebook.from_rpc(nb_data)
                if notebook:
                    notebooks.append(notebook)

        self.cache.set(notebooks_key(), notebooks, NOTEBOOKS_TTL)
        return notebooks

    async def get_notebook(self, notebook_id: str, use_cache: bool = True) -> Any:
        """Get raw notebook details."""
        key = notebook_key(notebook_id)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = await self.transport.call(
            constants.RPC_GET_NOTEBOOK,
            [notebook_id, None, [2], None, 0],
            f"/notebook/{notebook_id}",
        )
        if result is not None:
            self.cache.set(key, result, NOTEBOOK_TTL)
        return result

    async def create_notebook(self, title: str = "") -> Notebook | None:
        """Create a new notebook."""
        params = [title, None, None, [2], _CLIENT_OPTIONS]
        result = await self.transport.call(constants.RPC_CREATE_NOTEBOOK, params)
        self.cache.invalidate(notebooks_key())

        notebook_id = at_str(result, 2)
        if not notebook_id:
            return None
        return Notebook(id=notebook_id, title=title or "Untitled notebook", source_count=0)

    async def rename_notebook(self, notebook_id: str, new_title: str) -> bool:
        """Rename a notebook."""
        params = [notebook_id, [[None, None, None, [None, new_title]]]]
        result = await self.transport.call(
            constants.RPC_RENAME_NOTEBOOK, params, f"/notebook/{notebook_id}"
        )
        self._invalidate_notebook(notebook_id)
        return result is not None

    async def delete_notebook(self, notebook_id: str) -> bool:
        """Delete a notebook permanently.

        WARNING: This action is IRREVERSIBLE. The notebook and all its sources,
        notes, and generated content will be permanently deleted.
        """
        result = await self.transport.call(constants.RPC_DELETE_NOTEBOOK, [[notebook_id], [2]])
        self._invalidate_notebook(notebook_id)
        return result is not None

    def _invalidate_notebook(self, notebook_id: str) -> None:
        self.cache.invalidate(notebooks_key())
        self.cache.invalidate(notebook_key(notebook_id))

    # =========================================================================
    # Sources
    # =========================================================================

    async def _add_source(self, notebook_id: str, source_data: list, default_title: str) -> dict | None:
        params = [[source_data], notebook_id, [2], _CLIENT_OPTIONS]
        timeout = self.settings.source_add_timeout
        try:
            result = await self.transport.call(
                constants.RPC_ADD_SOURCE, params, f"/notebook/{notebook_id}", timeout=timeout
            )
        except NetworkTimeoutError:
            logger.warning(f"Adding source to {notebook_id} timed out after {timeout}s")
            # Large pages may take longer than the timeout but still succeed on backend
            return {
                "status": "timeout",
                "message": f"Operation timed out after {timeout}s but may have succeeded. "
                "Check notebook sources before retrying.",
            }
        finally:
            self._invalidate_notebook(notebook_id)

        source = at(result, 0, 0)
        source_id = at_str(source, 0, 0)
        if not source_id:
            return None
        return {"id": source_id, "title": at_str(source, 1) or default_title}

    async def add_url_source(self, notebook_id: str, url: str) -> dict | None:
        """Add a URL (website or YouTube) as a source to a notebook."""
        # YouTube URLs go in position 7, regular websites in position 2
        lowered = url.lower()
        if "youtube.com" in lowered or "youtu.be" in lowered:
            source_data = [None, None, None, None, None, None, None, [url], None, None, 1]
        else:
            source_data = [None, None, [url], None, None, None, None, None, None, None, 1]
        return await self._add_source(notebook_id, source_data, url)

    async def add_text_source(self, notebook_id: str, text: str, title: str = "Pasted Text") -> dict | None:
        """Add pasted text as a source to a notebook."""
        source_data = [None, [title, text], None, 2, None, None, None, None, None, None, 1]
        return await self._add_source(notebook_id, source_data, title)

    # =========================================================================
    # Query
    # =========================================================================

    async def query(
        self,
        notebook_id: str,
        query_text: str,
        source_ids: list[str] | None = None,
        conversation_id: str | None = None,
        timeout: float | None = None,
    ) -> dict:
        """Ask the notebook a question.

        Follow-ups pass the ``conversation_id`` from an earlier answer; the
        recorded turns are sent as history so the service keeps context.

        Returns:
            Dict with answer, conversation_id, turn_number and is_follow_up.

        Raises:
            ValidationError: If the notebook has no sources or no answer came back.
        """
        if not query_text or not query_text.strip():
            raise ValidationError("Query text is required.")

        if not source_ids:
            source_ids = extract_source_ids(await self.get_notebook(notebook_id))
        if not source_ids:
            raise ValidationError(
                "No sources found. Please add sources to the notebook or specify source_ids.",
                suggestion="Add a source with notebook_add_url or notebook_add_text first.",
            )

        is_follow_up = conversation_id is not None and conversation_id in self.conversations
        history = build_conversation_history(self.conversations.get(conversation_id)) if conversation_id else None
        conversation_id = conversation_id or str(uuid.uuid4())

        params = [
            [[[sid]] for sid in source_ids],
            query_text,
            history,
            [2, None, [1], [1]],
            conversation_id,
            None,
            None,
            None,
            2,
        ]

        answer = await self.transport.stream_query(params, timeout=timeout or self.settings.query_timeout)
        if not answer:
            raise ValidationError(
                "NotebookLM returned no answer. Ensure your query is relevant to the selected sources."
            )

        turn = self.conversations.append(conversation_id, query_text, answer)
        return {
            "answer": answer,
            "conversation_id": conversation_id,
            "turn_number": turn.turn_number,
            "is_follow_up": is_follow_up,
        }

    def get_conversation_history(self, conversation_id: str) -> list[dict] | None:
        turns = self.conversations.get(conversation_id)
        if not turns:
            return None
        return [t.to_dict() for t in turns]

    def clear_conversation(self, conversation_id: str) -> bool:
        return self.conversations.clear(conversation_id)
