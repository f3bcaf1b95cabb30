"""
Two-tier message cache.

The fast tier is a bounded in-memory LRU of per-session message lists; the
durable tier is the ConversationStore. Writes always reach the durable tier
first, so a fast-tier eviction never loses data.
"""

import logging
from collections import OrderedDict

from ..config.settings import AppSettings, get_settings
from ..core.models import ChatMessage
from ..database.store import ConversationStore

logger = logging.getLogger(__name__)


class MessageCache:
    """Ordered per-session message history with an in-memory front."""

    def __init__(
        self,
        store: ConversationStore,
        fetch_count: int | None = None,
        max_sessions: int | None = None,
        settings: AppSettings | None = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.fetch_count = fetch_count or settings.chat.message_fetch_count
        self.max_sessions = max_sessions or settings.chat.fast_cache_max_sessions
        self._entries: OrderedDict[str, list[ChatMessage]] = OrderedDict()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        """
        Get the in-context messages of a session, oldest first.

        Returns a copy; callers may append to it freely.
        """
        entry = self._entries.get(session_id)
        if entry is None:
            entry = await self._load(session_id)
        else:
            self._entries.move_to_end(session_id)
        return list(entry)

    async def append_messages(
        self, session_id: str, messages: list[ChatMessage]
    ) -> list[ChatMessage]:
        """Persist messages to the durable tier, then extend the fast tier."""
        stored = await self.store.append_messages(session_id, messages)

        entry = self._entries.get(session_id)
        if entry is None:
            # Durable tier already holds the new messages
            await self._load(session_id)
        else:
            entry.extend(stored)
            self._entries.move_to_end(session_id)
        return stored

    def clear_old_messages(self, session_id: str, keep_count: int) -> int:
        """
        Drop all but the newest ``keep_count`` messages from the fast tier.

        The durable tier is not touched. Returns the number of evicted messages.
        """
        entry = self._entries.get(session_id)
        if entry is None:
            return 0
        evicted = max(0, len(entry) - keep_count)
        if evicted:
            del entry[:evicted]
            logger.debug(f"Evicted {evicted} messages of session {session_id} from fast tier")
        return evicted

    def invalidate(self, session_id: str) -> None:
        """Forget a session's fast-tier entry; the next read reloads it."""
        self._entries.pop(session_id, None)

    def clear(self) -> None:
        self._entries.clear()

    async def _load(self, session_id: str) -> list[ChatMessage]:
        messages = await self.store.get_recent_messages(session_id, limit=self.fetch_count)
        self._entries[session_id] = messages
        self._entries.move_to_end(session_id)
        while len(self._entries) > self.max_sessions:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug(f"Fast tier full; evicted session {evicted_id}")
        return messages
