from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta

from .errors import DuplicateMessageIdError
from .models import Message, StoreStats
from .rwlock import ReadWriteLock


class MessageStore:
    """
    Newest-first, capacity-bounded collection of captured messages.

    Every mutation runs under the exclusive side of one ReadWriteLock and
    every query under the shared side, so a reader never sees a message that
    was inserted but whose eviction has not happened yet. Results are
    returned as fresh lists of immutable messages.
    """

    def __init__(self, max_messages: int) -> None:
        if max_messages < 1:
            raise ValueError(f"max_messages must be >= 1, got {max_messages}")
        # deque(maxlen) drops from the right when we appendleft at capacity
        self._messages: deque[Message] = deque(maxlen=max_messages)
        self._by_id: dict[str, Message] = {}
        self._lock = ReadWriteLock()

    @property
    def max_messages(self) -> int:
        return self._messages.maxlen or 0

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._messages)

    def append(self, message: Message) -> Message:
        """
        Insert ``message`` as the newest entry and evict the oldest if over capacity.

        Returns the message as stored. Its ``created_at`` is raised to the
        current head's timestamp if it would otherwise go backwards.
        """
        with self._lock.write():
            if message.id in self._by_id:
                raise DuplicateMessageIdError(message.id)

            if self._messages and message.created_at < self._messages[0].created_at:
                message = message.model_copy(update={"created_at": self._messages[0].created_at})

            if len(self._messages) == self._messages.maxlen:
                evicted = self._messages[-1]
                del self._by_id[evicted.id]

            self._messages.appendleft(message)
            self._by_id[message.id] = message
            return message

    def list(self) -> list[Message]:
        with self._lock.read():
            return list(self._messages)

    def find(self, message_id: str) -> Message | None:
        with self._lock.read():
            return self._by_id.get(message_id)

    def delete_all(self) -> int:
        with self._lock.write():
            removed = len(self._messages)
            self._messages.clear()
            self._by_id.clear()
            return removed

    def delete_one(self, message_id: str) -> bool:
        with self._lock.write():
            message = self._by_id.pop(message_id, None)
            if message is None:
                return False
            self._messages.remove(message)
            return True

    def search(self, query: str = "", to: str = "") -> list[Message]:
        """
        Case-sensitive substring search.

        ``query`` matches the body or the recipient, ``to`` matches the
        recipient only; both must hold when both are given. An empty value
        places no constraint.
        """
        with self._lock.read():
            return [
                m
                for m in self._messages
                if (not query or query in m.body or query in m.to) and (not to or to in m.to)
            ]

    def summarize(self, now: datetime) -> StoreStats:
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)
        with self._lock.read():
            recipients = {m.to for m in self._messages}
            last_24h = sum(1 for m in self._messages if m.created_at > day_ago)
            last_hour = sum(1 for m in self._messages if m.created_at > hour_ago)
            total = len(self._messages)
        return StoreStats(
            total_messages=total,
            unique_recipients=len(recipients),
            messages_last_24h=last_24h,
            messages_last_hour=last_hour,
        )
