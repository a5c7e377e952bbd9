"""Two-minute EventMet demo: FastAPI backend seeded with synthetic events.

Run with ``uvicorn app:app`` from this directory, then try
``/api/metrics/summary?eventType=ai_request&granularity=hour`` or ``/metrics``.
"""

from datetime import datetime, timedelta, timezone
from random import Random

from eventmet.adapters import InMemoryEventRepository
from eventmet.adapters.fastapi_app import create_app
from eventmet.config import configure_logging, load_config
from eventmet.live_metrics import LiveCounterRegistry
from eventmet.service import AnalyticsService

RNG = Random(42)
PLANS = (("basic", 9.99), ("premium", 29.99), ("team", 49.99))


def _build_demo_payloads() -> list:
    now = datetime.now(timezone.utc)
    payloads = []

    for idx in range(250):
        payloads.append(
            {
                "type": "ai_request",
                "userId": f"user-{idx % 17}",
                "service": "anthropic" if idx % 3 == 0 else "openai",
                "endpoint": "/v1/chat/completions",
                "durationMs": max(20, int(RNG.gauss(1800, 400))),
                "tokens": max(30, int(RNG.gauss(700, 180))),
                "cost": round(RNG.uniform(0.0005, 0.004), 4),
                "success": idx % 37 != 0,
                "occurredAt": (now - timedelta(minutes=idx * 3)).isoformat(),
            }
        )

    for idx in range(180):
        payloads.append(
            {
                "type": "engagement",
                "userId": f"user-{idx % 23}",
                "sessionId": f"session-{idx // 6}",
                "eventType": "page_view" if idx % 4 else "click",
                "page": "/dashboard",
                "durationMs": max(50, int(RNG.gauss(300, 90))),
                "occurredAt": (now - timedelta(minutes=idx * 4)).isoformat(),
            }
        )

    for idx in range(60):
        plan, amount = PLANS[idx % len(PLANS)]
        payloads.append(
            {
                "type": "sales",
                "userId": f"user-{idx}",
                "amount": amount,
                "currency": "USD",
                "status": "failed" if idx % 9 == 0 else "completed",
                "plan": plan,
                "occurredAt": (now - timedelta(hours=idx)).isoformat(),
            }
        )

    for idx in range(200):
        payloads.append(
            {
                "type": "performance",
                "endpoint": "/api/analyze",
                "method": "POST",
                "responseTimeMs": max(40, int(RNG.gauss(1200, 300))),
                "statusCode": 500 if idx % 25 == 0 else 200,
                "occurredAt": (now - timedelta(minutes=idx * 5)).isoformat(),
            }
        )

    return payloads


config = load_config()
configure_logging(config.log_level)

live_metrics = LiveCounterRegistry()
service = AnalyticsService(InMemoryEventRepository(), live_metrics=live_metrics, config=config)
service.ingest_batch(_build_demo_payloads())

app = create_app(service, config)
