"""Memoize query results with TTL expiry, generation invalidation and single-flight."""

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, TypeVar, Union

from .models import CacheEntry, EventKind, Granularity, ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

Filters = Union[Mapping[str, str], Iterable[Tuple[str, str]], None]


def normalize_filters(filters: Filters) -> Tuple[Tuple[str, str], ...]:
    """Sort filter tags so that logically identical filter sets compare equal."""
    if not filters:
        return ()
    pairs = filters.items() if isinstance(filters, Mapping) else filters
    return tuple(sorted((str(key), str(value)) for key, value in pairs))


def fingerprint(
    event_type: Union[EventKind, str],
    granularity: Union[Granularity, str],
    start: datetime,
    end: datetime,
    filters: Filters = None,
) -> str:
    """Deterministic cache key for a query, independent of filter ordering."""
    canonical = json.dumps(
        {
            "event_type": EventKind.parse(event_type).value,
            "granularity": granularity.value if isinstance(granularity, Granularity) else str(granularity),
            "start": ensure_utc(start).isoformat(),
            "end": ensure_utc(end).isoformat(),
            "filters": [list(pair) for pair in normalize_filters(filters)],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResultCache:
    """
    Thread-safe result cache shared by concurrent request handlers.

    An entry is served only while it is younger than its TTL and its stored
    generation equals the current generation for its event kind. Writers call
    :meth:`bump_generation` after every successful append, which makes every
    entry for that kind stale without enumerating them.

    Misses are computed at most once per ``(fingerprint, generation)``: the
    first caller runs ``compute_fn`` and later callers wait on its future. The
    internal mutex only guards the bookkeeping dicts and is never held while a
    computation runs.

    Expired and stale entries are swept on the miss path, at most once per
    ``sweep_interval`` seconds (``default_ttl`` unless given).
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[Any] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = default_ttl if sweep_interval is None else sweep_interval
        self._clock = clock
        self._metrics = metrics
        self._next_sweep = clock() + self.sweep_interval
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[EventKind, int] = {}
        self._flights: Dict[Tuple[str, int], Future] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def generation(self, kind: Union[EventKind, str]) -> int:
        with self._lock:
            return self._generations.get(EventKind.parse(kind), 0)

    def bump_generation(self, kind: Union[EventKind, str]) -> int:
        """Mark every cached result for ``kind`` as stale. Returns the new generation."""
        kind = EventKind.parse(kind)
        with self._lock:
            generation = self._generations.get(kind, 0) + 1
            self._generations[kind] = generation
        return generation

    def invalidate_all(self) -> None:
        with self._lock:
            for kind in EventKind:
                self._generations[kind] = self._generations.get(kind, 0) + 1
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop entries past their TTL. Optional; lookups already ignore them."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def get_or_compute(
        self,
        key: str,
        kind: Union[EventKind, str],
        compute_fn: Callable[[], T],
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Return the cached value for ``key`` or compute it under single-flight.

        ``timeout`` bounds how long a waiting caller blocks on another caller's
        computation; it raises ``concurrent.futures.TimeoutError`` for that
        caller only and leaves the computation running for everyone else.
        """
        kind = EventKind.parse(kind)
        ttl = self.default_ttl if ttl is None else ttl

        with self._lock:
            generation = self._generations.get(kind, 0)
            entry = self._entries.get(key)
            outcome = self._classify(entry, generation)
            if outcome == "hit":
                cached = entry.result
            else:
                if entry is not None:
                    del self._entries[key]
                self._maybe_sweep_locked()
                flight_key = (key, generation)
                future = self._flights.get(flight_key)
                leader = future is None
                if leader:
                    future = self._flights[flight_key] = Future()

        if outcome == "hit":
            self._record(kind, outcome)
            return cached
        self._record(kind, outcome if leader else "coalesced")
        if not leader:
            logger.debug("Waiting on in-flight computation for %s", key[:12])
            return future.result(timeout=timeout)

        logger.debug("Cache %s for %s (generation %d)", outcome, key[:12], generation)
        try:
            result = compute_fn()
        except BaseException as exc:
            with self._lock:
                self._flights.pop(flight_key, None)
            future.set_exception(exc)
            raise

        with self._lock:
            current = self._entries.get(key)
            if current is None or current.generation <= generation:
                self._entries[key] = CacheEntry(
                    fingerprint=key,
                    result=result,
                    expires_at=self._clock() + ttl,
                    generation=generation,
                    event_kind=kind,
                )
            self._flights.pop(flight_key, None)
        future.set_result(result)
        return result

    def _classify(self, entry: Optional[CacheEntry], generation: int) -> str:
        if entry is None:
            return "miss"
        if entry.generation != generation:
            return "stale"
        if self._clock() >= entry.expires_at:
            return "expired"
        return "hit"

    def _maybe_sweep_locked(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.sweep_interval
        dead = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at <= now
            or (
                entry.event_kind is not None
                and entry.generation != self._generations.get(entry.event_kind, 0)
            )
        ]
        for key in dead:
            del self._entries[key]
        if dead:
            logger.debug("Swept %d expired or stale cache entries", len(dead))

    def _record(self, kind: EventKind, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_cache_lookup(kind, outcome)
