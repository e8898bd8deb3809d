"""In-process fan-out of database change notifications."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from .constants import BROADCAST_CAPACITY

LOGGER = logging.getLogger(__name__)

Address = Tuple[str, int]


@dataclass(frozen=True)
class ModifiedEvent:
    """The database was replaced by the connection at ``sender``."""

    last_modified: datetime
    sender: Optional[Address] = None


class Subscription:
    """Bounded event queue of one subscriber.

    When the queue is full the oldest event is dropped and ``lagged`` is
    incremented, so the publisher never blocks.
    """

    def __init__(self, channel: "ModifiedBroadcast", capacity: int) -> None:
        self._channel = channel
        self._queue: "queue.Queue[ModifiedEvent]" = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self.lagged = 0

    def _push(self, event: ModifiedEvent) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.lagged += 1
                    except queue.Empty:
                        pass

    def get(self, timeout: Optional[float] = None) -> Optional[ModifiedEvent]:
        """Next event, or None if none arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ModifiedBroadcast:
    """Multi-subscriber channel; every subscriber sees every event."""

    def __init__(self, capacity: int = BROADCAST_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._capacity)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ModifiedEvent) -> int:
        """Deliver ``event`` to all current subscribers; returns how many."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._push(event)
        LOGGER.debug("published %s to %d subscriber(s)", event, len(subscribers))
        return len(subscribers)


__all__ = ["ModifiedBroadcast", "ModifiedEvent", "Subscription"]
