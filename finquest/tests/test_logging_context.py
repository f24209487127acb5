"""Tests for structured logging and request_id propagation."""

import json
import logging

from finquest.core.logging import JsonFormatter, log_event, request_id_ctx_var


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="finquest"):
        response = client.post(
            "/v1/challenges",
            headers={"X-User-Id": "alice"},
            json={"type": "savings", "title": "Save", "rules": {"target_amount": 1000}},
        )
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    created = [r for r in records if r.getMessage() == "challenge.created"]
    assert created and created[0].challenge_id == response.json()["data"]["id"]


def test_request_id_in_error_response(client):
    response = client.get("/v1/challenges/non-existent", headers={"X-User-Id": "alice"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_log_event_picks_up_context_request_id(caplog):
    token = request_id_ctx_var.set("rid-ctx")
    try:
        with caplog.at_level(logging.INFO, logger="finquest"):
            log_event("info", "challenge.transition", user_id="alice", challenge_id="c1", event_type="batch")
    finally:
        request_id_ctx_var.reset(token)

    record = caplog.records[-1]
    assert record.request_id == "rid-ctx"
    assert record.challenge_id == "c1"


def test_json_formatter_emits_event_fields():
    record = logging.LogRecord("finquest", logging.INFO, __file__, 1, "challenge.reward_issued", None, None)
    record.request_id = "r1"
    record.user_id = "alice"
    record.challenge_id = "c1"
    record.event_type = "transaction"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "challenge.reward_issued"
    assert payload["request_id"] == "r1"
    assert payload["challenge_id"] == "c1"
    assert payload["event_type"] == "transaction"
    assert "error_code" not in payload
