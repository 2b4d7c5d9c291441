"""Live feed of backup events for /ws/live subscribers.

A client may subscribe to a subset of events with ``?events=``, a
comma-separated list of event types (``backup_failed``) or categories
(``backup``, ``restore``, ``retention``, ``config``). Without it the
client receives everything.
"""

import json
import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = ("backup", "restore", "retention", "config")


def parse_event_filter(raw: str | None) -> frozenset | None:
    """Turn ``"backup, restore_failed"`` into a filter set; None means all.

    Raises ValueError for names outside the known categories.
    """
    if not raw:
        return None
    names = frozenset(part.strip().lower() for part in raw.split(",") if part.strip())
    unknown = sorted(n for n in names if n.split("_", 1)[0] not in EVENT_CATEGORIES)
    if unknown:
        raise ValueError(f"Unknown event types: {', '.join(unknown)}")
    return names or None


def event_matches(event_type: str, subscribed: frozenset | None) -> bool:
    if subscribed is None:
        return True
    if event_type in subscribed:
        return True
    category = event_type.split("_", 1)[0]
    return category in subscribed


class WebSocketHandler:
    """Subscriber registry keyed by socket, each with its event filter."""

    def __init__(self):
        self._subscribers: dict = {}
        self._lock = threading.Lock()

    def register(self, ws, event_types: frozenset | None = None):
        with self._lock:
            self._subscribers[ws] = event_types
            count = len(self._subscribers)
        if event_types is None:
            logger.debug("Live feed subscriber joined for all events (%d total)", count)
        else:
            logger.debug("Live feed subscriber joined for %s (%d total)",
                         ", ".join(sorted(event_types)), count)

    def unregister(self, ws):
        with self._lock:
            self._subscribers.pop(ws, None)
            count = len(self._subscribers)
        logger.debug("Live feed subscriber left (%d remaining)", count)

    def broadcast(self, event_type: str, data: dict) -> int:
        """Deliver one event to every matching subscriber.

        Subscribers whose ``send`` raises are dropped. Returns the number
        of sockets the event was delivered to.
        """
        message = json.dumps({
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }, default=str)
        delivered = 0
        with self._lock:
            targets = [ws for ws, subscribed in self._subscribers.items()
                       if event_matches(event_type, subscribed)]
            for ws in targets:
                try:
                    ws.send(message)
                except Exception as exc:
                    logger.debug("Dropping live feed subscriber: %s", exc)
                    self._subscribers.pop(ws, None)
                else:
                    delivered += 1
        return delivered

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
