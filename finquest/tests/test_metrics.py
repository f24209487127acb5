from finquest.core.metrics import METRICS, challenge_transitions_total, normalize_path


def test_normalize_path_collapses_ids():
    assert normalize_path("/v1/challenges/3f2b8c1e-5d7a-4c1b-9e2f-0a1b2c3d4e5f") == "/v1/challenges/:id"
    assert normalize_path("/v1/goals/42/contributions") == "/v1/goals/:id/contributions"
    assert normalize_path("/v1/challenges/stats") == "/v1/challenges/stats"


def test_counter_labels_and_export():
    challenge_transitions_total.inc({"status": "completed", "trigger": "batch"})
    challenge_transitions_total.inc({"status": "completed", "trigger": "batch"})

    text = METRICS.export_prometheus()

    assert "# TYPE challenge_transitions_total counter" in text
    assert 'challenge_transitions_total{status="completed",trigger="batch"} 2.0' in text


def test_metrics_endpoint_reports_requests_and_transitions(client):
    created = client.post(
        "/v1/challenges",
        headers={"X-User-Id": "alice"},
        json={"type": "savings", "title": "Save", "rules": {"target_amount": 100}},
    ).json()["data"]
    client.post("/v1/transactions", headers={"X-User-Id": "alice"}, json={"amount": 100, "type": "income"})
    client.get(f"/v1/challenges/{created['id']}", headers={"X-User-Id": "alice"})

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    body = resp.text
    assert 'http_requests_total{method="GET",path="/v1/challenges/:id",status="200"} 1.0' in body
    assert 'challenge_transitions_total{status="completed",trigger="transaction"} 1.0' in body
    assert 'reward_issuance_total{outcome="issued"} 1.0' in body
    assert 'challenge_drafts_generated_total{provenance="fallback"} 3.0' in body
