"""In-process event repository for demos and tests."""

import itertools
import threading
from datetime import datetime
from typing import Dict, List, Tuple

from ..models import Event, EventKind, ensure_utc, matches_filters


class InMemoryEventRepository:
    """Keeps events in per-kind lists guarded by a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._events: Dict[EventKind, List[Tuple[int, Event]]] = {kind: [] for kind in EventKind}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(rows) for rows in self._events.values())

    def append(self, event: Event) -> int:
        with self._lock:
            record_id = next(self._ids)
            self._events[event.kind].append((record_id, event))
        return record_id

    def query(
        self,
        event_kind: EventKind,
        start_date: datetime,
        end_date: datetime,
        filters: Tuple[Tuple[str, str], ...] = (),
    ) -> List[Event]:
        start_date = ensure_utc(start_date)
        end_date = ensure_utc(end_date)
        with self._lock:
            rows = list(self._events[EventKind.parse(event_kind)])
        return [
            event
            for _, event in rows
            if start_date <= event.occurred_at <= end_date and matches_filters(event, filters)
        ]
