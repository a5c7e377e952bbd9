"""Core domain models used by the aggregation engine."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union


class EventKind(str, Enum):
    """Tag of the event union, as sent by producers in the ``type`` field."""

    AI_REQUEST = "ai_request"
    ENGAGEMENT = "engagement"
    SALES = "sales"
    PERFORMANCE = "performance"

    @classmethod
    def parse(cls, value: Union[str, "EventKind"]) -> "EventKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValueError(f"unknown event type {value!r}; expected one of {allowed}") from None


class Granularity(str, Enum):
    """Width of a time bucket."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @classmethod
    def parse(cls, value: Union[str, "Granularity"]) -> "Granularity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(g.value for g in cls)
            raise ValueError(f"unknown granularity {value!r}; expected one of {allowed}") from None


SALE_STATUSES = ("completed", "pending", "failed", "refunded")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
ENGAGEMENT_TYPES = (
    "page_view",
    "click",
    "scroll",
    "form_submit",
    "feature_use",
    "session_start",
    "session_end",
)


@dataclass(frozen=True)
class AIRequestEvent:
    """A single call to an upstream AI inference service."""

    kind: ClassVar[EventKind] = EventKind.AI_REQUEST

    user_id: str
    service: str
    endpoint: Optional[str]
    duration_ms: float
    tokens: int
    cost: float
    success: bool
    occurred_at: datetime

    def dimensions(self) -> Dict[str, str]:
        return _string_fields(self)


@dataclass(frozen=True)
class EngagementEvent:
    """A user interaction captured by the frontend."""

    kind: ClassVar[EventKind] = EventKind.ENGAGEMENT

    user_id: str
    session_id: Optional[str]
    event_type: str
    page: Optional[str]
    duration_ms: float
    occurred_at: datetime

    def dimensions(self) -> Dict[str, str]:
        return _string_fields(self)


@dataclass(frozen=True)
class SalesEvent:
    """A payment attempt for a subscription plan."""

    kind: ClassVar[EventKind] = EventKind.SALES

    user_id: str
    amount: float
    currency: str
    status: str
    plan: Optional[str]
    occurred_at: datetime

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def dimensions(self) -> Dict[str, str]:
        return _string_fields(self)


@dataclass(frozen=True)
class PerformanceEvent:
    """A served HTTP request with its latency and status code."""

    kind: ClassVar[EventKind] = EventKind.PERFORMANCE

    endpoint: str
    method: str
    response_time_ms: float
    status_code: int
    user_id: Optional[str]
    occurred_at: datetime

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def dimensions(self) -> Dict[str, str]:
        dims = _string_fields(self)
        dims["status_code"] = str(self.status_code)
        return dims


Event = Union[AIRequestEvent, EngagementEvent, SalesEvent, PerformanceEvent]

EVENT_CLASSES: Dict[EventKind, type] = {
    EventKind.AI_REQUEST: AIRequestEvent,
    EventKind.ENGAGEMENT: EngagementEvent,
    EventKind.SALES: SalesEvent,
    EventKind.PERFORMANCE: PerformanceEvent,
}


@dataclass(frozen=True)
class BucketKey:
    """Canonical identity of one aggregation window."""

    event_kind: EventKind
    granularity: Granularity
    period_start: datetime


@dataclass(frozen=True)
class AggregateResult:
    """Finalized statistics for one bucket, or for a whole range when ``bucket_key`` is None."""

    bucket_key: Optional[BucketKey]
    count: int
    total: int
    sums: Mapping[str, float]
    averages: Mapping[str, Optional[float]]
    rates: Mapping[str, Optional[float]]
    percentiles: Mapping[str, Mapping[str, float]]
    uniques: Mapping[str, int]
    computed_at: datetime

    @property
    def period_start(self) -> Optional[datetime]:
        return self.bucket_key.period_start if self.bucket_key else None

    def to_dict(self) -> Dict[str, Any]:
        """Render with camelCase keys for JSON responses."""
        return {
            "periodStart": self.period_start.isoformat() if self.period_start else None,
            "count": self.count,
            "total": self.total,
            "sums": _camel_keys(self.sums),
            "averages": _camel_keys(self.averages),
            "rates": _camel_keys(self.rates),
            "percentiles": _camel_keys(self.percentiles),
            "uniques": _camel_keys(self.uniques),
            "computedAt": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class CacheEntry:
    """A memoized query result tagged with the generation it was computed under."""

    fingerprint: str
    result: Any
    expires_at: float
    generation: int = field(default=0)
    event_kind: Optional[EventKind] = None


def event_to_payload(event: Event) -> Dict[str, Any]:
    """Serialize the event body, without ``occurred_at``, to a JSON-compatible dict."""
    payload = asdict(event)
    payload.pop("occurred_at")
    return payload


def event_from_payload(kind: EventKind, payload: Mapping[str, Any], occurred_at: datetime) -> Event:
    """Rebuild an event previously produced by :func:`event_to_payload`."""
    event_cls = EVENT_CLASSES[kind]
    names = {f.name for f in fields(event_cls)}
    values = {key: value for key, value in payload.items() if key in names}
    values["occurred_at"] = ensure_utc(occurred_at)
    return event_cls(**values)


def matches_filters(event: Event, filters: Tuple[Tuple[str, str], ...]) -> bool:
    """Return True when every ``(key, value)`` pair equals the event's dimension."""
    if not filters:
        return True
    dims = event.dimensions()
    return all(dims.get(key) == value for key, value in filters)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _string_fields(event: Event) -> Dict[str, str]:
    return {
        f.name: getattr(event, f.name)
        for f in fields(event)
        if isinstance(getattr(event, f.name), str)
    }


def _camel_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {_camel(key): value for key, value in values.items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
