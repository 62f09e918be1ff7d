"""Tests for structured error responses."""
from __future__ import annotations

import pytest


@pytest.mark.asyncio
async def test_unknown_route_returns_structured_error(client):
    resp = await client.get("/api/does-not-exist")
    assert resp.status_code == 404
    data = resp.json()
    assert "error" in data
    assert "message" in data


@pytest.mark.asyncio
async def test_bad_request_uses_error_envelope(client):
    resp = await client.get("/api/redirect", params={"affiliate_id": "aff1", "url": "ftp://files.example/"})
    assert resp.status_code == 400
    data = resp.json()
    assert data["error"] == "url must be an absolute http(s) URL"
    assert data["message"] == data["error"]


@pytest.mark.asyncio
async def test_validation_error_returns_structured_error(client):
    """A body missing required fields gets clean field-level details."""
    resp = await client.post("/api/track-redirection-chain", json={"affiliate_id": "aff1"})
    assert resp.status_code == 422
    data = resp.json()
    assert data["error"] == "validation_error"
    assert isinstance(data["details"], list)
    assert any("redirection_url" in d["field"] for d in data["details"])


@pytest.mark.asyncio
async def test_malformed_json_body_returns_validation_error(client):
    resp = await client.post(
        "/api/capture-final",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_method_not_allowed_uses_envelope(client):
    resp = await client.delete("/api/redirect")
    assert resp.status_code == 405
    assert "error" in resp.json()
