"""Tests for request ID tracing middleware."""
import logging

import pytest

from clicktrail.logging_config import JSONFormatter, RequestIDFilter
from clicktrail.middleware.request_id import request_id_var


@pytest.mark.asyncio
async def test_response_includes_request_id(client):
    """Every response should have X-Request-ID header."""
    resp = await client.get("/health")
    assert "x-request-id" in resp.headers
    rid = resp.headers["x-request-id"]
    assert len(rid) == 36  # UUID format


@pytest.mark.asyncio
async def test_client_request_id_honored(client):
    """If client sends X-Request-ID, server should echo it back."""
    custom_id = "my-trace-12345"
    resp = await client.get("/health", headers={"X-Request-ID": custom_id})
    assert resp.headers["x-request-id"] == custom_id


@pytest.mark.asyncio
async def test_redirects_carry_request_id(client):
    resp = await client.get("/api/track-click/clk_missing")
    assert resp.status_code == 302
    assert "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_unique_ids_per_request(client):
    """Each request gets a unique ID."""
    r1 = await client.get("/health")
    r2 = await client.get("/health")
    assert r1.headers["x-request-id"] != r2.headers["x-request-id"]


def test_log_records_carry_request_id():
    token = request_id_var.set("trace-abc")
    try:
        record = logging.LogRecord("clicktrail.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        assert RequestIDFilter().filter(record)
        assert record.request_id == "trace-abc"
        line = JSONFormatter().format(record)
    finally:
        request_id_var.reset(token)
    assert '"request_id": "trace-abc"' in line
    assert '"message": "hello world"' in line
