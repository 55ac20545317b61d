import pytest
from aiohttp import test_utils

from sensor_pulse.shared import metrics  # noqa: F401  registers the collectors
from sensor_pulse.shared.health import build_health_app

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


async def test_health_reports_live_stats():
    counters = {"messages_received": 0}
    app = build_health_app("ingest", lambda: dict(counters))

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        counters["messages_received"] = 5
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()

    assert body == {"status": "healthy", "service": "ingest", "messages_received": 5}


async def test_metrics_endpoint_serves_prometheus_text():
    app = build_health_app("jobs", dict)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.get("/metrics")
        assert resp.status == 200
        text = await resp.text()

    assert "sensor_rollup_rows_inserted_total" in text
