from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from eventmet.adapters import InMemoryEventRepository
from eventmet.adapters.fastapi_app import create_app
from eventmet.config import AppConfig
from eventmet.errors import RepositoryError
from eventmet.live_metrics import LiveCounterRegistry
from eventmet.service import AnalyticsService

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

AI_EVENT = {
    "type": "ai_request",
    "userId": "user123",
    "service": "openai",
    "endpoint": "/v1/chat/completions",
    "durationMs": 2500,
    "tokens": 150,
    "cost": 0.003,
    "success": True,
    "occurredAt": "2024-01-15T10:30:00Z",
}


def build_client(repo=None):
    service = AnalyticsService(
        repo if repo is not None else InMemoryEventRepository(),
        live_metrics=LiveCounterRegistry(),
        config=AppConfig(environment="test"),
        clock=lambda: NOW,
    )
    return TestClient(create_app(service), raise_server_exceptions=False)


@pytest.fixture
def client():
    return build_client()


def test_root_and_health(client):
    assert client.get("/").text == "Metrics Service is running"

    body = client.get("/health").json()
    assert body["status"] == "OK"
    assert body["service"] == "Metrics Service"
    assert body["environment"] == "test"
    assert "timestamp" in body


def test_ingest_event_returns_201(client):
    response = client.post("/api/events", json=AI_EVENT)

    assert response.status_code == 201
    assert response.json() == {"id": 1, "type": "ai_request"}


def test_invalid_event_returns_400_with_field(client):
    response = client.post("/api/events", json={**AI_EVENT, "durationMs": -5})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_failed"
    assert [violation["field"] for violation in body["violations"]] == ["durationMs"]


def test_malformed_json_returns_400(client):
    response = client.post(
        "/api/events",
        content="invalid json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["violations"][0]["field"] == "body"


def test_batch_reports_each_event(client):
    response = client.post("/api/events/batch", json=[AI_EVENT, {**AI_EVENT, "cost": -1}])

    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] == [{"index": 0, "id": 1, "type": "ai_request"}]
    assert body["rejected"][0]["index"] == 1
    assert body["rejected"][0]["violations"][0]["field"] == "cost"


def test_batch_requires_a_list(client):
    response = client.post("/api/events/batch", json=AI_EVENT)

    assert response.status_code == 400
    assert response.json()["violations"][0]["field"] == "body"


def test_summary_returns_zero_filled_buckets(client):
    client.post("/api/events", json=AI_EVENT)

    response = client.get(
        "/api/metrics/summary",
        params={"eventType": "ai_request", "granularity": "day", "startDate": "2024-01-01", "endDate": "2024-01-15"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["eventType"] == "ai_request"
    assert len(body["buckets"]) == 15
    last = body["buckets"][-1]
    assert last["periodStart"] == "2024-01-15T00:00:00+00:00"
    assert last["count"] == 1
    assert last["averages"]["durationMs"] == 2500.0
    assert body["buckets"][0]["count"] == 0


def test_summary_accepts_group_by_and_filters(client):
    client.post("/api/events", json=AI_EVENT)
    client.post("/api/events", json={**AI_EVENT, "service": "anthropic"})

    response = client.get(
        "/api/metrics/summary",
        params=[
            ("eventType", "ai_request"),
            ("groupBy", "hour"),
            ("startDate", "2024-01-15T10:00:00Z"),
            ("endDate", "2024-01-15T10:59:59Z"),
            ("filter", "service:anthropic"),
        ],
    )

    assert response.status_code == 200
    body = response.json()
    assert body["granularity"] == "hour"
    assert [bucket["count"] for bucket in body["buckets"]] == [1]


@pytest.mark.parametrize(
    "params, field",
    [
        ({}, "eventType"),
        ({"eventType": "heartbeat"}, "eventType"),
        ({"eventType": "ai_request", "startDate": "invalid-date"}, "startDate"),
        ({"eventType": "ai_request", "granularity": "decade"}, "granularity"),
        ({"eventType": "ai_request", "filter": "no-separator"}, "filter"),
    ],
)
def test_summary_rejects_bad_parameters(client, params, field):
    response = client.get("/api/metrics/summary", params=params)

    assert response.status_code == 400
    assert response.json()["violations"][0]["field"] == field


def test_stats_and_dashboard(client):
    client.post("/api/events", json=AI_EVENT)

    stats = client.get("/api/stats/ai_request", params={"startDate": "2024-01-15", "endDate": "2024-01-15"})
    dashboard = client.get("/api/metrics/dashboard", params={"startDate": "2024-01-15", "endDate": "2024-01-15"})

    assert stats.status_code == 200
    assert stats.json()["stats"]["count"] == 1
    assert stats.json()["stats"]["periodStart"] is None
    assert dashboard.json()["ai_request"]["count"] == 1
    assert dashboard.json()["sales"]["count"] == 0


def test_metrics_endpoint_exposes_prometheus_text(client):
    client.post("/api/events", json=AI_EVENT)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'eventmet_events_total{event_type="ai_request"} 1.0' in response.text


def test_unknown_route_returns_404(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


class DownRepo(InMemoryEventRepository):
    def query(self, *args, **kwargs):
        raise RepositoryError("database unreachable", transient=False)


def test_repository_failure_returns_500_without_details():
    client = build_client(DownRepo())

    response = client.get("/api/stats/sales")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_unsupported_method_returns_404(client):
    response = client.put("/health")

    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


def test_ai_tracking_routes_imply_the_event_type(client):
    payload = {
        "userId": "user123",
        "service": "openai",
        "endpoint": "/v1/chat/completions",
        "duration": 2500,
        "tokens": 150,
        "cost": 0.003,
        "success": True,
    }

    created = client.post("/api/ai-tracking/request", json=payload)
    stats = client.get("/api/ai-tracking/stats")

    assert created.status_code == 201
    assert created.json() == {"id": 1, "type": "ai_request"}
    assert stats.json()["eventType"] == "ai_request"
    assert stats.json()["stats"]["count"] == 1


def test_performance_routes_imply_the_event_type(client):
    payload = {
        "endpoint": "/api/analyze",
        "method": "POST",
        "responseTime": 1200,
        "statusCode": 500,
        "userId": "user123",
    }

    created = client.post("/api/performance/metric", json=payload)
    stats = client.get("/api/performance/stats").json()["stats"]

    assert created.status_code == 201
    assert stats["count"] == 1
    assert stats["rates"]["errorRate"] == 100.0


def test_per_kind_ingest_rejects_invalid_payloads(client):
    response = client.post("/api/ai-tracking/request", json={"userId": "user123", "duration": -1})

    assert response.status_code == 400
    fields = [violation["field"] for violation in response.json()["violations"]]
    assert "service" in fields
    assert len(fields) == 2


def test_analytics_routes(client):
    client.post("/api/events", json=AI_EVENT)

    overview = client.get("/api/analytics/overview")
    engagement = client.get("/api/analytics/engagement")
    sales = client.get("/api/analytics/sales")

    assert overview.status_code == 200
    assert overview.json()["ai_request"]["count"] == 1
    assert engagement.json()["eventType"] == "engagement"
    assert sales.json()["stats"]["count"] == 0
