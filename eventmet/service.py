"""Application service orchestrating validation, repositories, caching and analytics."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple, Union

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from .analytics import aggregate, empty_result, metric_spec_for, summarize
from .bucketing import parse_instant, range_to_buckets
from .cache import Filters, ResultCache, fingerprint, normalize_filters
from .config import AppConfig
from .errors import RepositoryError, ValidationError
from .live_metrics import LiveCounterRegistry
from .models import AggregateResult, BucketKey, Event, EventKind, Granularity, ensure_utc
from .ports import EventRepository
from .validation import validate

logger = logging.getLogger(__name__)

DateLike = Union[datetime, str, None]
OPEN_END_RESOLUTION = timedelta(minutes=1)


@dataclass(frozen=True)
class IngestReceipt:
    record_id: Hashable
    event: Event


@dataclass(frozen=True)
class BatchIngestResult:
    accepted: List[Tuple[int, IngestReceipt]] = field(default_factory=list)
    rejected: List[Tuple[int, ValidationError]] = field(default_factory=list)


class AnalyticsService:
    """Facade service that exposes ingestion and metric queries independent of web frameworks."""

    def __init__(
        self,
        repo: EventRepository,
        cache: Optional[ResultCache] = None,
        live_metrics: Optional[LiveCounterRegistry] = None,
        config: Optional[AppConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.config = config if config is not None else AppConfig()
        self.live_metrics = live_metrics if live_metrics is not None else LiveCounterRegistry()
        if cache is None:
            cache = ResultCache(default_ttl=self.config.cache.ttl_seconds, metrics=self.live_metrics)
        self.cache = cache
        self._clock = clock if clock is not None else (lambda: datetime.now(timezone.utc))
        self._retrying = Retrying(
            stop=stop_after_attempt(self.config.retry.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry.initial_backoff_seconds,
                max=self.config.retry.max_backoff_seconds,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def ingest(self, raw: Any, event_type: Union[EventKind, str, None] = None) -> IngestReceipt:
        """
        Validate and persist one event, then update caches and live counters.

        ``event_type`` sets the ``type`` tag for callers whose route already
        implies it. Rejected events are never persisted and never reach the
        live counters.
        """
        if event_type is not None and isinstance(raw, Mapping):
            raw = {**raw, "type": _parse_kind(event_type).value}
        try:
            event = validate(
                raw,
                now=self._clock(),
                max_clock_skew=timedelta(seconds=self.config.ingest.max_clock_skew_seconds),
            )
        except ValidationError as exc:
            logger.warning("Rejected event: invalid fields %s", ", ".join(exc.fields))
            raise
        return self._store(event)

    def ingest_batch(self, raws: Iterable[Any]) -> BatchIngestResult:
        """Ingest each payload independently; validation failures do not abort the batch."""
        result = BatchIngestResult()
        for index, raw in enumerate(raws):
            try:
                result.accepted.append((index, self.ingest(raw)))
            except ValidationError as exc:
                result.rejected.append((index, exc))
        logger.info(
            "Ingested batch: %d accepted, %d rejected", len(result.accepted), len(result.rejected)
        )
        return result

    def query(
        self,
        event_type: Union[EventKind, str],
        granularity: Union[Granularity, str],
        start_date: DateLike = None,
        end_date: DateLike = None,
        filters: Filters = None,
    ) -> List[AggregateResult]:
        """Bucketed statistics covering every bucket of the period, oldest first."""
        kind = _parse_kind(event_type)
        try:
            granularity = Granularity.parse(granularity)
        except ValueError as exc:
            raise ValidationError.single("granularity", str(exc)) from None
        start, end = self._normalize_period(start_date, end_date)
        tags = normalize_filters(filters)

        def compute() -> Tuple[AggregateResult, ...]:
            spec = metric_spec_for(kind)
            events = self._read(kind, start, end, tags)
            filled = aggregate(events, granularity, spec)
            computed_at = self._clock()
            return tuple(
                filled.get(period_start)
                or empty_result(BucketKey(kind, granularity, period_start), spec, computed_at)
                for period_start in range_to_buckets(start, end, granularity)
            )

        key = fingerprint(kind, granularity, start, end, tags)
        return list(self.cache.get_or_compute(key, kind, compute))

    def get_stats(
        self,
        event_type: Union[EventKind, str],
        start_date: DateLike = None,
        end_date: DateLike = None,
        filters: Filters = None,
    ) -> AggregateResult:
        """Whole-period statistics for one event kind."""
        kind = _parse_kind(event_type)
        start, end = self._normalize_period(start_date, end_date)
        tags = normalize_filters(filters)

        def compute() -> AggregateResult:
            return summarize(self._read(kind, start, end, tags), metric_spec_for(kind), self._clock())

        key = fingerprint(kind, "total", start, end, tags)
        return self.cache.get_or_compute(key, kind, compute)

    def get_dashboard(
        self,
        start_date: DateLike = None,
        end_date: DateLike = None,
    ) -> Dict[str, AggregateResult]:
        start, end = self._normalize_period(start_date, end_date)
        return {kind.value: self.get_stats(kind, start, end) for kind in EventKind}

    def _store(self, event: Event) -> IngestReceipt:
        record_id = self._retrying.copy()(self.repo.append, event)
        self.cache.bump_generation(event.kind)
        self.live_metrics.record_event(event)
        logger.debug("Accepted %s event as record %s", event.kind.value, record_id)
        return IngestReceipt(record_id=record_id, event=event)

    def _read(
        self,
        kind: EventKind,
        start: datetime,
        end: datetime,
        tags: Tuple[Tuple[str, str], ...],
    ) -> List[Event]:
        return self._retrying.copy()(lambda: list(self.repo.query(kind, start, end, tags)))

    def _normalize_period(
        self,
        start_date: DateLike,
        end_date: DateLike,
    ) -> Tuple[datetime, datetime]:
        end = _parse_date_param("endDate", end_date, end_of_day=True)
        start = _parse_date_param("startDate", start_date, end_of_day=False)
        if end is None:
            end = _open_end(self._clock())
        if start is None:
            start = end - timedelta(days=self.config.default_period_days)
        if start > end:
            raise ValidationError.single("startDate", "startDate must not be after endDate")
        return start, end


def _open_end(now: datetime) -> datetime:
    # Last instant of the current minute; open-ended queries within a minute share a fingerprint.
    minute = ensure_utc(now).replace(second=0, microsecond=0)
    return minute + OPEN_END_RESOLUTION - timedelta(microseconds=1)


def _parse_kind(event_type: Union[EventKind, str]) -> EventKind:
    try:
        return EventKind.parse(event_type)
    except ValueError as exc:
        raise ValidationError.single("eventType", str(exc)) from None


def _parse_date_param(name: str, value: DateLike, end_of_day: bool) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_instant(value, end_of_day=end_of_day)
    except (TypeError, ValueError):
        raise ValidationError.single(name, f"unparsable date {value!r}") from None


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RepositoryError) and exc.transient
