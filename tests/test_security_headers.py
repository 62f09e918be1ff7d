"""Tests for security headers middleware."""
import pytest


@pytest.mark.asyncio
async def test_security_headers_present(client):
    resp = await client.get("/health")
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["referrer-policy"] == "no-referrer-when-downgrade"
    assert "camera=()" in resp.headers["permissions-policy"]


@pytest.mark.asyncio
async def test_tracking_redirects_never_cached(client):
    resp = await client.get("/api/track-click/clk_missing")
    assert resp.status_code == 302
    assert "no-store" in resp.headers.get("cache-control", "")
    assert resp.headers["pragma"] == "no-cache"


@pytest.mark.asyncio
async def test_health_is_not_forced_no_store(client):
    resp = await client.get("/health")
    assert "no-store" not in resp.headers.get("cache-control", "")
