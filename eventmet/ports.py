"""Port definitions for persisting and fetching events from any store."""

from datetime import datetime
from typing import Hashable, Iterable, Protocol, Tuple

from .models import Event, EventKind


class EventRepository(Protocol):
    """Append-only event store that adapters can implement for any backend."""

    def append(self, event: Event) -> Hashable:
        """
        Persist one validated event and return its record id.

        Raises:
            RepositoryError: on I/O failure; ``transient`` marks retryable errors.
        """

    def query(
        self,
        event_kind: EventKind,
        start_date: datetime,
        end_date: datetime,
        filters: Tuple[Tuple[str, str], ...] = (),
    ) -> Iterable[Event]:
        """Return events of one kind in ``[start_date, end_date]``, in any order."""
