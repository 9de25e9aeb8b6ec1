"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from attendrix.core.logging import StructuredFormatter, _safe_truncate, bind_action_context, log_event, request_id_ctx_var
from attendrix.main import create_app
from attendrix.features.mirror.store import InMemoryMirrorStore
from attendrix.tests.mocks import FakeAuthoritativeStore


def make_app():
    return create_app(source=FakeAuthoritativeStore(), store=InMemoryMirrorStore(), run_flush_worker=False)


def test_request_id_in_response_and_logs(caplog):
    with TestClient(make_app()) as client:
        with caplog.at_level(logging.INFO, logger="attendrix"):
            response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_id_in_error_response():
    with TestClient(make_app()) as client:
        response = client.get("/v1/streaks/current", params={"user_id": "nobody"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    payload = response.json()
    assert payload["error"]["request_id"] == rid


def test_log_event_carries_structured_fields(caplog):
    token = request_id_ctx_var.set("rid-42")
    try:
        with caplog.at_level(logging.INFO, logger="attendrix"):
            log_event("warning", "attendance.test", user_id="u1", class_id="c1", error_code="mirror_flush_failed")
    finally:
        request_id_ctx_var.reset(token)

    record = [r for r in caplog.records if r.getMessage() == "attendance.test"][0]
    assert record.levelno == logging.WARNING
    assert record.request_id == "rid-42"

    payload = json.loads(StructuredFormatter(as_json=True).format(record))
    assert payload["user_id"] == "u1"
    assert payload["class_id"] == "c1"
    assert payload["error_code"] == "mirror_flush_failed"


def test_safe_truncate():
    assert _safe_truncate("x" * 10, limit=20) == "x" * 10
    assert _safe_truncate("x" * 30, limit=20).endswith("...<truncated>")


def test_action_context_is_bound_to_records(caplog):
    with caplog.at_level(logging.INFO, logger="attendrix"):
        with bind_action_context("u7", "c9"):
            log_event("info", "inside.action")
        log_event("info", "outside.action")

    inside = [r for r in caplog.records if r.getMessage() == "inside.action"][0]
    outside = [r for r in caplog.records if r.getMessage() == "outside.action"][0]
    assert (inside.user_id, inside.class_id) == ("u7", "c9")
    assert outside.user_id is None


def test_pretty_line_includes_context():
    record = logging.LogRecord("attendrix", logging.INFO, __file__, 1, "mirror.flush.applied", None, None)
    record.request_id = "rid-1"
    record.user_id = "u1"

    line = StructuredFormatter().format(record)

    assert line.endswith("INFO mirror.flush.applied request_id=rid-1 user_id=u1")


def test_unsafe_incoming_request_id_is_replaced():
    with TestClient(make_app()) as client:
        kept = client.get("/healthz", headers={"x-request-id": "trace-abc.123"})
        replaced = client.get("/healthz", headers={"x-request-id": "bad id with spaces"})
    assert kept.headers["x-request-id"] == "trace-abc.123"
    assert replaced.headers["x-request-id"] != "bad id with spaces"
