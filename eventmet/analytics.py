"""Pure aggregation functions that fold events into per-bucket statistics."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from math import floor
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .bucketing import bucket_for
from .errors import ComputeError
from .models import (
    AggregateResult,
    BucketKey,
    Event,
    EventKind,
    Granularity,
)

PERCENTILE_POINTS = (50, 90, 95, 99)
_RATE_QUANTUM = Decimal("0.01")
_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class MetricSpec:
    """
    Which fields of an event kind to fold and how to judge its outcome.

    ``outcome`` returns True for a success, False for a failure, or None when
    the kind has no notion of success. With ``count_successes_only`` only
    successful events contribute to ``count`` and the per-field metrics; the
    success rate is still taken over every event in the bucket.
    """

    event_kind: EventKind
    sum_fields: Tuple[str, ...] = ()
    percentile_fields: Tuple[str, ...] = ()
    distinct_fields: Tuple[str, ...] = ()
    outcome: Optional[Callable[[Event], Optional[bool]]] = None
    count_successes_only: bool = False


DEFAULT_METRIC_SPECS: Dict[EventKind, MetricSpec] = {
    EventKind.AI_REQUEST: MetricSpec(
        event_kind=EventKind.AI_REQUEST,
        sum_fields=("duration_ms", "tokens", "cost"),
        percentile_fields=("duration_ms",),
        distinct_fields=("user_id",),
        outcome=lambda event: event.success,
    ),
    EventKind.ENGAGEMENT: MetricSpec(
        event_kind=EventKind.ENGAGEMENT,
        sum_fields=("duration_ms",),
        distinct_fields=("user_id", "session_id"),
    ),
    EventKind.SALES: MetricSpec(
        event_kind=EventKind.SALES,
        sum_fields=("amount",),
        distinct_fields=("user_id",),
        outcome=lambda event: event.completed,
        count_successes_only=True,
    ),
    EventKind.PERFORMANCE: MetricSpec(
        event_kind=EventKind.PERFORMANCE,
        sum_fields=("response_time_ms",),
        percentile_fields=("response_time_ms",),
        outcome=lambda event: not event.is_error,
    ),
}


def metric_spec_for(kind: Union[EventKind, str]) -> MetricSpec:
    """Return the default metric spec for an event kind."""
    return DEFAULT_METRIC_SPECS[EventKind.parse(kind)]


def aggregate(
    events: Iterable[Event],
    granularity: Union[Granularity, str],
    metric_spec: MetricSpec,
    computed_at: Optional[datetime] = None,
) -> Dict[datetime, AggregateResult]:
    """
    Fold events into buckets in a single pass.

    The fold is commutative, so the result does not depend on the order in
    which the repository returned the events. Buckets come back in ascending
    ``period_start`` order.
    """
    granularity = Granularity.parse(granularity)
    computed_at = computed_at or datetime.now(timezone.utc)

    accumulators: Dict[datetime, _Accumulator] = {}
    for event in events:
        _check_kind(event, metric_spec)
        period_start = bucket_for(event.occurred_at, granularity)
        accumulator = accumulators.get(period_start)
        if accumulator is None:
            accumulator = accumulators[period_start] = _Accumulator(metric_spec)
        accumulator.add(event)

    return {
        period_start: accumulators[period_start].finalize(
            BucketKey(metric_spec.event_kind, granularity, period_start), computed_at
        )
        for period_start in sorted(accumulators)
    }


def summarize(
    events: Iterable[Event],
    metric_spec: MetricSpec,
    computed_at: Optional[datetime] = None,
) -> AggregateResult:
    """Fold every event into a single result with no bucket key."""
    accumulator = _Accumulator(metric_spec)
    for event in events:
        _check_kind(event, metric_spec)
        accumulator.add(event)
    return accumulator.finalize(None, computed_at or datetime.now(timezone.utc))


def empty_result(
    bucket_key: Optional[BucketKey],
    metric_spec: MetricSpec,
    computed_at: Optional[datetime] = None,
) -> AggregateResult:
    """Result for a bucket that received no events."""
    return _Accumulator(metric_spec).finalize(bucket_key, computed_at or datetime.now(timezone.utc))


@dataclass
class _Accumulator:
    spec: MetricSpec
    total: int = 0
    count: int = 0
    successes: int = 0
    failures: int = 0
    sums: Dict[str, Decimal] = field(default_factory=dict)
    observations: Dict[str, int] = field(default_factory=dict)
    samples: Dict[str, List[float]] = field(default_factory=dict)
    distinct: Dict[str, Set[str]] = field(default_factory=dict)

    def add(self, event: Event) -> None:
        self.total += 1
        outcome = self.spec.outcome(event) if self.spec.outcome else None
        if outcome is True:
            self.successes += 1
        elif outcome is False:
            self.failures += 1

        if self.spec.count_successes_only and outcome is False:
            return
        self.count += 1

        for name in self.spec.sum_fields:
            value = getattr(event, name, None)
            if value is None:
                continue
            self.sums[name] = self.sums.get(name, Decimal(0)) + _to_decimal(value)
            self.observations[name] = self.observations.get(name, 0) + 1

        for name in self.spec.percentile_fields:
            value = getattr(event, name, None)
            if value is not None:
                self.samples.setdefault(name, []).append(float(value))

        for name in self.spec.distinct_fields:
            value = getattr(event, name, None)
            if value is not None:
                self.distinct.setdefault(name, set()).add(value)

    def finalize(self, bucket_key: Optional[BucketKey], computed_at: datetime) -> AggregateResult:
        self._check_consistency()

        sums = {name: float(self.sums.get(name, Decimal(0))) for name in self.spec.sum_fields}
        averages = {}
        for name in self.spec.sum_fields:
            observed = self.observations.get(name, 0)
            averages[name] = float(self.sums[name] / observed) if observed else None

        rates: Dict[str, Optional[float]] = {}
        if self.spec.outcome is not None:
            rates["success_rate"] = _rate(self.successes, self.total)
            rates["error_rate"] = _rate(self.failures, self.total)

        return AggregateResult(
            bucket_key=bucket_key,
            count=self.count,
            total=self.total,
            sums=sums,
            averages=averages,
            rates=rates,
            percentiles={
                name: _compute_percentiles(self.samples.get(name, ()))
                for name in self.spec.percentile_fields
            },
            uniques={name: len(self.distinct.get(name, ())) for name in self.spec.distinct_fields},
            computed_at=computed_at,
        )

    def _check_consistency(self) -> None:
        if self.count < 0 or self.total < 0:
            raise ComputeError(f"negative count in bucket (count={self.count}, total={self.total})")
        if self.count > self.total:
            raise ComputeError(f"count {self.count} exceeds events seen {self.total}")
        if self.successes + self.failures > self.total:
            raise ComputeError("more outcomes recorded than events seen")


def _check_kind(event: Event, spec: MetricSpec) -> None:
    if event.kind is not spec.event_kind:
        raise ComputeError(
            f"received {event.kind.value} event while aggregating {spec.event_kind.value}"
        )


def _to_decimal(value: Union[int, float]) -> Decimal:
    # str() gives the shortest repr, so 9.99 accumulates as exactly 9.99.
    if isinstance(value, int):
        return Decimal(value)
    return Decimal(str(value))


def _rate(part: int, whole: int) -> Optional[float]:
    if whole == 0:
        return None
    rate = (Decimal(part) / Decimal(whole) * _HUNDRED).quantize(_RATE_QUANTUM, rounding=ROUND_HALF_UP)
    return float(rate)


def _compute_percentiles(values: Iterable[float]) -> Dict[str, float]:
    sorted_values = sorted(float(value) for value in values)
    if not sorted_values:
        return _empty_percentiles()

    return {f"p{point}": _percentile(sorted_values, point / 100) for point in PERCENTILE_POINTS}


def _percentile(sorted_values: List[float], quantile: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return sorted_values[0]

    position = quantile * (len(sorted_values) - 1)
    lower_index = floor(position)
    upper_index = min(lower_index + 1, len(sorted_values) - 1)
    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    weight = position - lower_index
    return lower_value + (upper_value - lower_value) * weight


def _empty_percentiles() -> Dict[str, float]:
    return {f"p{point}": 0.0 for point in PERCENTILE_POINTS}
