"""Structured logging, request_id binding and the log_event helper."""

import json
import logging

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from mentor.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    bind_request_id,
    get_request_id,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
)
from mentor.core.middleware.request_id import RequestIdMiddleware


def _echo_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    return app


def test_request_id_generated_and_echoed():
    client = TestClient(_echo_app())

    generated = client.get("/echo")
    provided = client.get("/echo", headers={"X-Request-Id": "rid-abc"})

    assert generated.headers["x-request-id"] == generated.json()["request_id"]
    assert provided.headers["x-request-id"] == "rid-abc"


def test_log_event_carries_context_and_truncates(caplog):
    token = request_id_ctx_var.set("rid-ctx")
    try:
        with caplog.at_level(logging.INFO, logger="mentor"):
            log_event("info", "ledger.entry_recorded", user_id="u1", event_type="ledger_entry", extra={"note": "x" * 900})
    finally:
        request_id_ctx_var.reset(token)

    record = next(r for r in caplog.records if r.getMessage() == "ledger.entry_recorded")
    assert record.request_id == "rid-ctx"
    assert record.user_id == "u1"
    assert record.event_type == "ledger_entry"
    assert record.note.endswith("...<truncated>")


def test_json_formatter_emits_sync_fields():
    record = logging.LogRecord("mentor", logging.WARNING, __file__, 1, "sync.clock_skew", None, None)
    record.user_id = "u1"
    record.error_code = "clock_skew"
    RequestIdFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "sync.clock_skew"
    assert payload["level"] == "WARNING"
    assert payload["user_id"] == "u1"
    assert payload["error_code"] == "clock_skew"
    assert payload["request_id"] is None
    assert payload["timestamp"].endswith("Z")


def test_bind_request_id_restores_previous():
    with bind_request_id("outer"):
        with bind_request_id("inner"):
            assert get_request_id() == "inner"
        assert get_request_id() == "outer"
    assert get_request_id("none") == "none"


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(3) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(1500) == ">=1000ms"


@pytest.mark.asyncio
async def test_background_sync_logs_carry_run_id(service, caplog):
    service.complete_challenge("u1")

    with caplog.at_level(logging.INFO, logger="mentor"):
        await service.trigger_sync("u1", reason="periodic")

    run_ids = {r.request_id for r in caplog.records if r.getMessage() == "sync.reconciled"}
    assert len(run_ids) == 1
    assert run_ids.pop().startswith("sync-")
