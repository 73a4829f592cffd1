"""In-memory conversation history, capped per user and in number of users."""
import logging
from collections import OrderedDict

from config import MAX_HISTORY_MESSAGES, MAX_USERS_IN_MEMORY

logger = logging.getLogger(__name__)


class HistoryStore:
    def __init__(self, max_messages: int = MAX_HISTORY_MESSAGES, max_users: int = MAX_USERS_IN_MEMORY):
        self.max_messages = max_messages
        self.max_users = max_users
        # Ordered by last access, oldest first
        self._histories: OrderedDict[int, list[dict]] = OrderedDict()

    def get(self, user_id: int) -> list[dict]:
        history = self._histories.get(user_id)
        if history is None:
            return []
        self._histories.move_to_end(user_id)
        return list(history)

    def append(self, user_id: int, message: dict):
        history = self._histories.setdefault(user_id, [])
        self._histories.move_to_end(user_id)
        history.append(message)
        if len(history) > self.max_messages:
            del history[: len(history) - self.max_messages]
        self._evict()

    def _evict(self):
        evicted = 0
        while len(self._histories) > self.max_users:
            self._histories.popitem(last=False)
            evicted += 1
        if evicted:
            logger.info("Evicted %d inactive users from history", evicted)

    def reset(self, user_id: int):
        self._histories.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._histories)
