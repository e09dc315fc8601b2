from __future__ import annotations

import asyncio
import contextlib
import json
import threading
import uuid
from enum import Enum

from .errors import DeliveryError
from .logging_utils import get_logger
from .models import Message

logger = get_logger("smspit.broadcast")

EVENT_NEW_MESSAGE = "new_message"


class SubscriberState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Subscriber:
    """
    One live WebSocket connection as seen by the registry.

    ``deliver`` may be called from any thread; it hands the payload to the
    subscriber's event loop and returns immediately. The WebSocket handler
    awaits ``next_event`` on that loop and gets ``None`` once the subscriber
    has been closed.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, max_pending: int = 256) -> None:
        self.id = uuid.uuid4().hex[:8]
        self._loop = loop
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._max_pending = max(1, int(max_pending))
        self._pending = 0
        self._state = SubscriberState.CONNECTING
        self._lock = threading.Lock()

    @property
    def state(self) -> SubscriberState:
        return self._state

    def open(self) -> None:
        with self._lock:
            if self._state is SubscriberState.CONNECTING:
                self._state = SubscriberState.OPEN

    def deliver(self, payload: str) -> None:
        with self._lock:
            if self._state is not SubscriberState.OPEN:
                raise DeliveryError(f"subscriber {self.id} is {self._state.value}")
            if self._pending >= self._max_pending:
                raise DeliveryError(f"subscriber {self.id} has {self._pending} undelivered events")
            self._pending += 1
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, payload)
        except RuntimeError as exc:
            raise DeliveryError(f"subscriber {self.id} event loop is closed") from exc

    async def next_event(self) -> str | None:
        payload = await self._queue.get()
        if payload is not None:
            with self._lock:
                self._pending -= 1
        return payload

    def close(self) -> bool:
        """Move to CLOSED and wake the sender. Only the first call does anything."""
        with self._lock:
            if self._state in (SubscriberState.CLOSING, SubscriberState.CLOSED):
                return False
            self._state = SubscriberState.CLOSING
        # A closed loop has no sender left to wake.
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        with self._lock:
            self._state = SubscriberState.CLOSED
        return True


class BroadcastRegistry:
    """
    Set of live subscribers and the fan-out of capture events to them.

    Guarded by its own lock, never held together with the store's lock.
    ``notify`` offers the event to every subscriber while holding the lock,
    which keeps per-subscriber order equal to notify order; offering never
    blocks, so the capturing request is not held up by slow sockets.
    """

    def __init__(self, *, max_pending: int = 256) -> None:
        self._max_pending = max_pending
        self._subscribers: set[Subscriber] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, loop: asyncio.AbstractEventLoop | None = None) -> Subscriber:
        subscriber = Subscriber(loop or asyncio.get_running_loop(), max_pending=self._max_pending)
        with self._lock:
            self._subscribers.add(subscriber)
            subscriber.open()
            count = len(self._subscribers)
        logger.info(
            "broadcast.subscribed",
            extra={"fields": {"subscriber": subscriber.id, "subscribers": count}},
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> bool:
        """Remove ``subscriber``; returns True only for the call that actually removed it."""
        with self._lock:
            removed = subscriber in self._subscribers
            self._subscribers.discard(subscriber)
            count = len(self._subscribers)
        subscriber.close()
        if removed:
            logger.info(
                "broadcast.unsubscribed",
                extra={"fields": {"subscriber": subscriber.id, "subscribers": count}},
            )
        return removed

    def notify(self, message: Message) -> int:
        payload = json.dumps({"type": EVENT_NEW_MESSAGE, "message": message.to_payload()})
        delivered = 0
        dropped: list[tuple[Subscriber, DeliveryError]] = []
        with self._lock:
            for subscriber in self._subscribers:
                try:
                    subscriber.deliver(payload)
                except DeliveryError as exc:
                    dropped.append((subscriber, exc))
                else:
                    delivered += 1
            for subscriber, _ in dropped:
                self._subscribers.discard(subscriber)

        for subscriber, exc in dropped:
            subscriber.close()
            logger.warning(
                "broadcast.subscriber_dropped",
                extra={"fields": {"subscriber": subscriber.id, "reason": str(exc)}},
            )
        return delivered

    def close_all(self) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.close()
        return len(subscribers)
