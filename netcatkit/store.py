from collections import deque
from typing import List, Optional

from .models import NetcatMessage


class MessageStore:
    """Bounded log of the most recent messages of one session.

    Appending beyond capacity silently evicts the oldest record. The all-time
    message count is tracked by the session, not here.
    """

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.messages: deque = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self.messages.maxlen

    def append(self, message: NetcatMessage):
        self.messages.append(message)

    def recent(self, limit: Optional[int] = None) -> List[NetcatMessage]:
        """Returns up to `limit` records, most recent first."""
        if limit is not None and limit <= 0:
            return []
        newest_first = list(reversed(self.messages))
        return newest_first if limit is None else newest_first[:limit]

    def clear(self):
        self.messages.clear()

    def __len__(self) -> int:
        return len(self.messages)
