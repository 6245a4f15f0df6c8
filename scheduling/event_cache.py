"""Local read-through cache of events."""
import logging
import threading
from typing import Dict, Iterable, List, Optional

from scheduling.models import Event

logger = logging.getLogger(__name__)


class EventCache:
    """
    In-memory map of events keyed by id.

    Fed by the change stream and by successful engine writes. The store is
    the source of truth; the cache keeps serving last-known values while the
    store is unreachable.
    """

    def __init__(self):
        self._events: Dict[str, Event] = {}
        self._lock = threading.Lock()
        self.offline = False

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    def put(self, event: Event) -> None:
        with self._lock:
            self._events[event.id] = event

    def remove(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

    def replace_all(self, events: Iterable[Event]) -> None:
        """Swap the cache contents for a fresh snapshot."""
        snapshot = {event.id: event for event in events}
        with self._lock:
            self._events = snapshot
        logger.debug(f"Cache replaced with {len(snapshot)} events")

    def events(self) -> List[Event]:
        """Return cached events sorted by start time."""
        with self._lock:
            events = list(self._events.values())
        return sorted(events, key=lambda event: event.start_time)
