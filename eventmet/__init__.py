"""EventMet - windowed aggregation, caching and live metrics for product events."""

from .analytics import aggregate, empty_result, metric_spec_for, summarize
from .bucketing import bucket_for, range_to_buckets
from .cache import ResultCache, fingerprint
from .errors import ComputeError, RepositoryError, ValidationError
from .live_metrics import LiveCounterRegistry
from .service import AnalyticsService
from .validation import validate, validate_batch

__all__ = [
    "AnalyticsService",
    "LiveCounterRegistry",
    "ResultCache",
    "aggregate",
    "summarize",
    "empty_result",
    "metric_spec_for",
    "bucket_for",
    "range_to_buckets",
    "fingerprint",
    "validate",
    "validate_batch",
    "ValidationError",
    "RepositoryError",
    "ComputeError",
]

__version__ = "0.1.0"
