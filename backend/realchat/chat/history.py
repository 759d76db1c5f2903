"""History Replay: the recent messages a client receives when it joins a room."""
from typing import List, Optional

from realchat.storage.models import ChatMessage
from realchat.storage.repository import ChatStore

# Default page size for message history
DEFAULT_HISTORY_LIMIT = 50

# Maximum page size to prevent abuse
MAX_HISTORY_LIMIT = 100


class HistoryReplay:
    """Reads the persisted log of a room, oldest first."""

    def __init__(
        self,
        store: ChatStore,
        default_limit: int = DEFAULT_HISTORY_LIMIT,
        max_limit: int = MAX_HISTORY_LIMIT,
    ) -> None:
        self._store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.default_limit
        return min(limit, self.max_limit)

    def recent(
        self,
        room: str,
        limit: Optional[int] = None,
        up_to: Optional[int] = None,
    ) -> List[ChatMessage]:
        """Return up to ``limit`` most recent messages in chronological order.

        Args:
            room: Room name.
            limit: Page size; defaults to ``default_limit``, capped at
                ``max_limit``.
            up_to: Only messages created at or before this timestamp (epoch
                ms). A joining connection uses its join timestamp so that
                later messages, which it will receive live, are not replayed
                twice.
        """
        newest_first = self._store.recent_messages(room, self.resolve_limit(limit), up_to)
        return list(reversed(newest_first))
