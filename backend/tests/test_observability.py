from fastapi.testclient import TestClient

from boardroom.core.observability import MetricsStore
from boardroom.main import app


def test_metrics_store_tracks_discussion_counters():
    store = MetricsStore()

    store.record_turn(is_fallback=False)
    store.record_turn(is_fallback=True)
    store.record_turn(is_fallback=False, summary=True)
    store.record_busy()
    for latency in range(1, 21):
        store.record_advance(latency_ms=latency * 10, completed=latency == 20, timeout=latency == 5)

    discussions = store.snapshot()["discussions"]
    assert discussions["turns_generated_total"] == 2
    assert discussions["summary_total"] == 1
    assert discussions["fallback_total"] == 1
    assert discussions["fallback_rate"] == 1 / 3
    assert discussions["busy_total"] == 1
    assert discussions["advance_total"] == 20
    assert discussions["completed_total"] == 1
    assert discussions["timeout_rate"] == 1 / 20
    assert discussions["p95_advance_latency_ms"] == 190.0


def test_metrics_store_separates_rejections_from_errors():
    store = MetricsStore()

    store.record("/api/v1/discussions/{discussion_id}", 5.0, 200)
    store.record("/api/v1/discussions/{discussion_id}", 15.0, 404)
    store.record("/api/v1/discussions/{discussion_id}/advance", 30.0, 502)

    snapshot = store.snapshot()
    assert snapshot["request_total"] == 3
    assert snapshot["rejected_total"] == 1
    assert snapshot["error_total"] == 1
    assert snapshot["avg_latency_ms"]["/api/v1/discussions/{discussion_id}"] == 10.0
    assert MetricsStore().snapshot()["discussions"]["p95_advance_latency_ms"] == 0.0


def test_health_reports_discussion_limits():
    client = TestClient(app)

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["limits"]["max_speeches_per_participant"] == 2
    assert body["limits"]["max_rounds"] == 3
