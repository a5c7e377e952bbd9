"""Live counters, gauges and histograms exposed for Prometheus scraping."""

import logging
from typing import Iterator, List, Sequence, Tuple, Union

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.metrics import MetricWrapperBase
from prometheus_client.metrics_core import Metric
from prometheus_client.samples import Sample

from .models import (
    AIRequestEvent,
    EngagementEvent,
    Event,
    EventKind,
    PerformanceEvent,
    SalesEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class LiveCounterRegistry:
    """
    Process-wide metrics state, constructed once and injected where needed.

    Every update goes through prometheus_client, whose values are guarded by
    per-value locks, so concurrent ``record_event`` calls never lose an
    increment and ``snapshot`` never blocks writers for longer than a single
    value read.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(
        self,
        namespace: str = "eventmet",
        duration_buckets: Sequence[float] = DEFAULT_DURATION_BUCKETS,
    ):
        self.namespace = namespace
        self.registry = CollectorRegistry(auto_describe=True)
        self._metrics: List[MetricWrapperBase] = []

        self.events_total = self._add(
            Counter, "events", "Accepted events by type", ["event_type"]
        )
        self.last_ingested = self._add(
            Gauge,
            "last_ingested_timestamp_seconds",
            "Unix time of the most recently accepted event by type",
            ["event_type"],
        )

        self.ai_requests = self._add(
            Counter, "ai_requests", "AI inference calls by service and outcome", ["service", "outcome"]
        )
        self.ai_duration = self._add(
            Histogram,
            "ai_request_duration_seconds",
            "AI inference call duration",
            ["service"],
            buckets=duration_buckets,
        )
        self.ai_cost = self._add(Counter, "ai_cost", "Cumulative AI inference cost", ["service"])
        self.ai_tokens = self._add(Counter, "ai_tokens", "Cumulative AI tokens consumed", ["service"])

        self.engagement_events = self._add(
            Counter, "engagement_events", "User engagement actions", ["action"]
        )
        self.engagement_duration = self._add(
            Histogram,
            "engagement_duration_seconds",
            "Time spent per engagement action",
            ["action"],
            buckets=duration_buckets,
        )

        self.sales = self._add(Counter, "sales", "Sales attempts by status", ["status", "currency"])
        self.revenue = self._add(Counter, "sales_revenue", "Revenue from completed sales", ["currency"])

        self.http_requests = self._add(
            Counter, "http_requests", "Served HTTP requests", ["method", "status_code"]
        )
        self.http_response_time = self._add(
            Histogram,
            "http_response_time_seconds",
            "HTTP response time",
            ["method"],
            buckets=duration_buckets,
        )

        self.cache_lookups = self._add(
            Counter, "cache_lookups", "Result cache lookups by outcome", ["event_type", "outcome"]
        )

        logger.debug("Live counter registry initialized with namespace %s", namespace)

    def record_event(self, event: Event) -> None:
        """Fold one accepted event into the live counters."""
        if isinstance(event, AIRequestEvent):
            outcome = "success" if event.success else "failure"
            self.ai_requests.labels(service=event.service, outcome=outcome).inc()
            self.ai_duration.labels(service=event.service).observe(event.duration_ms / 1000.0)
            self.ai_cost.labels(service=event.service).inc(event.cost)
            self.ai_tokens.labels(service=event.service).inc(event.tokens)
        elif isinstance(event, EngagementEvent):
            self.engagement_events.labels(action=event.event_type).inc()
            self.engagement_duration.labels(action=event.event_type).observe(event.duration_ms / 1000.0)
        elif isinstance(event, SalesEvent):
            self.sales.labels(status=event.status, currency=event.currency).inc()
            if event.completed:
                self.revenue.labels(currency=event.currency).inc(event.amount)
        elif isinstance(event, PerformanceEvent):
            self.http_requests.labels(method=event.method, status_code=str(event.status_code)).inc()
            self.http_response_time.labels(method=event.method).observe(event.response_time_ms / 1000.0)
        else:
            raise TypeError(f"unhandled event type {type(event).__name__}")

        self.events_total.labels(event_type=event.kind.value).inc()
        self.last_ingested.labels(event_type=event.kind.value).set_to_current_time()

    def record_cache_lookup(self, kind: Union[EventKind, str], outcome: str) -> None:
        self.cache_lookups.labels(event_type=EventKind.parse(kind).value, outcome=outcome).inc()

    def snapshot(self) -> str:
        """Render the current state in Prometheus text format, samples sorted by labels."""
        return generate_latest(_SortedView(self.registry)).decode("utf-8")

    def reset(self) -> None:
        """Drop all labelled children. Intended for shutdown and tests."""
        for metric in self._metrics:
            metric.clear()

    def _add(self, metric_cls, name: str, documentation: str, labelnames: List[str], **kwargs):
        metric = metric_cls(
            name,
            documentation,
            labelnames,
            namespace=self.namespace,
            registry=self.registry,
            **kwargs,
        )
        self._metrics.append(metric)
        return metric


class _SortedView:
    """Collector facade that orders each family's samples by label values."""

    def __init__(self, registry: CollectorRegistry):
        self._registry = registry

    def collect(self) -> Iterator[Metric]:
        for family in self._registry.collect():
            # Stable sort keeps histogram buckets in ``le`` order within a child.
            family.samples.sort(key=_label_order)
            yield family


def _label_order(sample: Sample) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((key, value) for key, value in sample.labels.items() if key != "le"))
