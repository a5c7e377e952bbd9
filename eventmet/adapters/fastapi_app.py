"""FastAPI application exposing ingestion, query and scrape endpoints."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import AppConfig
from ..errors import EventMetError, FieldViolation, ValidationError
from ..models import EventKind
from ..service import AnalyticsService

logger = logging.getLogger(__name__)

SERVICE_NAME = "Metrics Service"


def create_app(service: AnalyticsService, config: Optional[AppConfig] = None) -> FastAPI:
    """Wire an :class:`AnalyticsService` into HTTP routes."""
    config = config if config is not None else service.config
    live_metrics = service.live_metrics
    app = FastAPI(title="EventMet", version=__version__)

    @app.exception_handler(ValidationError)
    def _validation_failed(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    def _malformed_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        violations = [FieldViolation(_request_field(error), error["msg"]) for error in exc.errors()]
        return JSONResponse(status_code=400, content=ValidationError(violations).to_dict())

    @app.exception_handler(EventMetError)
    def _server_error(request: Request, exc: EventMetError) -> JSONResponse:
        logger.exception("Request to %s failed", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(StarletteHTTPException)
    def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Unsupported methods on a known path are reported like unknown routes.
        if exc.status_code in (404, 405):
            return JSONResponse(status_code=404, content={"error": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        return f"{SERVICE_NAME} is running"

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "OK",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": config.environment,
            "version": __version__,
        }

    @app.get("/metrics")
    def metrics() -> PlainTextResponse:
        return PlainTextResponse(live_metrics.snapshot(), media_type=live_metrics.content_type)

    @app.post("/api/events", status_code=201)
    def ingest_event(payload: Any = Body(default=None)) -> dict:
        receipt = service.ingest(payload)
        return {"id": receipt.record_id, "type": receipt.event.kind.value}

    @app.post("/api/events/batch")
    def ingest_batch(payload: Any = Body(default=None)) -> dict:
        if not isinstance(payload, list):
            raise ValidationError.single("body", "expected a JSON array of events")
        result = service.ingest_batch(payload)
        return {
            "accepted": [
                {"index": index, "id": receipt.record_id, "type": receipt.event.kind.value}
                for index, receipt in result.accepted
            ],
            "rejected": [
                {"index": index, **error.to_dict()} for index, error in result.rejected
            ],
        }

    @app.get("/api/metrics/summary")
    def metrics_summary(
        event_type: str = Query(..., alias="eventType"),
        granularity: Optional[str] = Query(default=None),
        group_by: Optional[str] = Query(default=None, alias="groupBy"),
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
        filters: List[str] = Query(default=[], alias="filter"),
    ) -> dict:
        granularity = granularity or group_by or "day"
        buckets = service.query(event_type, granularity, start_date, end_date, _parse_filters(filters))
        return {
            "eventType": event_type,
            "granularity": granularity,
            "buckets": [bucket.to_dict() for bucket in buckets],
        }

    @app.get("/api/stats/{event_type}")
    def stats(
        event_type: str,
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
        filters: List[str] = Query(default=[], alias="filter"),
    ) -> dict:
        result = service.get_stats(event_type, start_date, end_date, _parse_filters(filters))
        return {"eventType": event_type, "stats": result.to_dict()}

    @app.get("/api/metrics/dashboard")
    def dashboard(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        summaries = service.get_dashboard(start_date, end_date)
        return {kind: result.to_dict() for kind, result in summaries.items()}

    # Per-kind routes: the path implies the event type, so payloads carry no ``type``.

    def _ingest_as(kind: EventKind, payload: Any) -> dict:
        receipt = service.ingest(payload, event_type=kind)
        return {"id": receipt.record_id, "type": receipt.event.kind.value}

    def _stats_for(kind: EventKind, start_date: Optional[str], end_date: Optional[str]) -> dict:
        result = service.get_stats(kind, start_date, end_date)
        return {"eventType": kind.value, "stats": result.to_dict()}

    @app.post("/api/ai-tracking/request", status_code=201)
    def track_ai_request(payload: Any = Body(default=None)) -> dict:
        return _ingest_as(EventKind.AI_REQUEST, payload)

    @app.get("/api/ai-tracking/stats")
    def ai_request_stats(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        return _stats_for(EventKind.AI_REQUEST, start_date, end_date)

    @app.get("/api/analytics/overview")
    def analytics_overview(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        return dashboard(start_date, end_date)

    @app.get("/api/analytics/engagement")
    def engagement_stats(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        return _stats_for(EventKind.ENGAGEMENT, start_date, end_date)

    @app.get("/api/analytics/sales")
    def sales_stats(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        return _stats_for(EventKind.SALES, start_date, end_date)

    @app.post("/api/performance/metric", status_code=201)
    def track_performance(payload: Any = Body(default=None)) -> dict:
        return _ingest_as(EventKind.PERFORMANCE, payload)

    @app.get("/api/performance/stats")
    def performance_stats(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict:
        return _stats_for(EventKind.PERFORMANCE, start_date, end_date)

    logger.info("EventMet API configured for %s environment", config.environment)
    return app


def _parse_filters(raw_filters: List[str]) -> List[tuple]:
    pairs = []
    for raw in raw_filters:
        key, sep, value = raw.partition(":")
        if not sep or not key or not value:
            raise ValidationError.single("filter", f"expected key:value, got {raw!r}")
        pairs.append((key, value))
    return pairs


def _request_field(error: dict) -> str:
    if error.get("type") == "json_invalid":
        return "body"
    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    return ".".join(loc) or "body"
