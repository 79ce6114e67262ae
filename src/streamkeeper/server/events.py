"""Diagnostic event feed for the reconnection machinery.

The controller and session owner publish a record for every transition
(retry scheduled, attempts exhausted, stream loaded, session replaced).
Records go to a ring buffer for ``/api/events/recent`` and to one queue per
open ``/api/events`` stream.
"""

import logging
import queue
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)

LISTENER_BACKLOG = 50


class EventBus:
    """Publishes transition records from the playback loop to HTTP readers.

    Writers are on the ``playback-loop`` thread, readers on Flask request
    threads. A listener that falls ``LISTENER_BACKLOG`` records behind is
    cut off rather than allowed to stall the loop.
    """

    def __init__(self, history: int = 200):
        self._ring: deque[dict] = deque(maxlen=history)
        self._listeners: set[queue.Queue] = set()
        self._guard = threading.Lock()

    def emit(self, event_type: str, title: str = "", detail: str = ""):
        """Record a transition and hand it to every open stream.

        Args:
            event_type: One of "retry", "exhausted", "loaded", "reconnect",
                "session", "start_error", "teardown_error"
            title: One-line summary shown in the Telegram status and SSE UI
            detail: Extra context such as the delay or the error text
        """
        record = {
            "type": event_type,
            "title": title,
            "detail": detail,
            "timestamp": time.time(),
        }
        with self._guard:
            self._ring.append(record)
            lagging = [q for q in self._listeners if not self._offer(q, record)]
            self._listeners.difference_update(lagging)
        if lagging:
            logger.debug("Cut off %d lagging event stream(s)", len(lagging))
        logger.debug("Event %s: %s", event_type, title)

    @staticmethod
    def _offer(listener: queue.Queue, record: dict) -> bool:
        try:
            listener.put_nowait(record)
        except queue.Full:
            return False
        return True

    def subscribe(self) -> queue.Queue:
        listener: queue.Queue = queue.Queue(maxsize=LISTENER_BACKLOG)
        with self._guard:
            self._listeners.add(listener)
            count = len(self._listeners)
        logger.debug("Event stream opened (%d open)", count)
        return listener

    def unsubscribe(self, listener: queue.Queue):
        """Forget a stream's queue. Unknown queues are ignored."""
        with self._guard:
            self._listeners.discard(listener)
            count = len(self._listeners)
        logger.debug("Event stream closed (%d open)", count)

    def recent(self, limit: int = 20, event_type: str | None = None) -> list[dict]:
        """Up to ``limit`` records, newest first, optionally of one type."""
        if limit <= 0:
            return []
        with self._guard:
            snapshot = list(self._ring)
        picked = []
        for record in reversed(snapshot):
            if event_type and record["type"] != event_type:
                continue
            picked.append(record)
            if len(picked) == limit:
                break
        return picked

    @property
    def subscriber_count(self) -> int:
        with self._guard:
            return len(self._listeners)
