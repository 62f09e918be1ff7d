"""Tests for tracking link generation and the admin affiliate views."""
from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest

from config.settings import settings
from clicktrail.services import background

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}


# ── Auth ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_disabled_without_configured_key(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    resp = await client.post("/api/v1/links", json={"affiliate_id": "aff1", "preview_url": "https://shop.example/"})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_wrong_or_missing_key_rejected(client, admin_key):
    resp = await client.get("/api/v1/admin/affiliates/aff1/stats", headers={"X-Admin-Key": "nope"})
    assert resp.status_code == 403

    resp = await client.get("/api/v1/admin/affiliates/aff1/stats")
    assert resp.status_code == 403


# ── Link generation ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_link_mints_pending_click(client, recorder, admin_key):
    resp = await client.post("/api/v1/links", headers=admin_key, json={
        "affiliate_id": "aff1",
        "preview_url": "https://shop.example/p?sku=1",
        "campaign_id": "camp1",
        "advertiser_id": "adv9",
    })

    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "pending"
    assert data["tracking_link"] == f"http://test/api/track-click/{data['click_id']}"
    script_query = parse_qs(urlsplit(data["capture_script"]).query)
    assert script_query["click_id"] == [data["click_id"]]
    assert script_query["campaign_id"] == ["camp1"]

    click = await recorder.get_click(data["click_id"])
    assert click.status == "pending"
    assert click.preview_url == "https://shop.example/p?sku=1"
    assert click.click_count == 0


@pytest.mark.asyncio
async def test_create_link_rejects_non_http_url(client, admin_key):
    resp = await client.post("/api/v1/links", headers=admin_key, json={
        "affiliate_id": "aff1", "preview_url": "javascript:alert(1)",
    })
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_generated_link_redirects_and_marks_clicked(client, recorder, admin_key):
    created = (await client.post("/api/v1/links", headers=admin_key, json={
        "affiliate_id": "aff1",
        "preview_url": "https://shop.example/p?sku=1",
        "campaign_id": "camp1",
        "advertiser_id": "adv9",
    })).json()
    click_id = created["click_id"]

    resp = await client.get(f"/api/track-click/{click_id}", headers={"X-Forwarded-For": "203.0.113.7"})
    await background.drain()

    assert resp.status_code == 302
    location = urlsplit(resp.headers["location"])
    params = parse_qs(location.query)
    assert location.netloc == "shop.example"
    assert params["sku"] == ["1"]
    assert params["click_id"] == [click_id]
    assert params["affiliate_id"] == ["aff1"]
    assert params["advertiser_id"] == ["adv9"]
    assert params["source"] == ["tracking_system"]
    assert params["tracking_domain"] == ["test"]

    click = await recorder.get_click(click_id)
    assert click.status == "clicked"
    assert click.ip_address == "203.0.113.7"
    assert click.click_count == 1


# ── Admin views ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_affiliate_stats_and_chains(client, admin_key, upstream):
    upstream.redirect("https://ad.example/go", "https://shop.example/landing?clickref=r1")
    upstream.page("https://shop.example/landing?clickref=r1")

    tracked = await client.post("/api/track-redirection-chain", json={
        "affiliate_id": "aff1", "redirection_url": "https://ad.example/go", "click_id": "clk_admin",
    })
    assert tracked.json()["stored"] is True

    stats = (await client.get("/api/v1/admin/affiliates/aff1/stats", headers=admin_key)).json()
    assert stats["aggregates"]["redirect_chains"]["total"] == 1

    chains = (await client.get("/api/v1/admin/affiliates/aff1/chains", headers=admin_key)).json()
    assert chains["count"] == 1
    [chain] = chains["chains"]
    assert chain["click_id"] == "clk_admin"
    assert chain["final_url"] == "https://shop.example/landing?clickref=r1"
    assert [hop["step"] for hop in chain["hops"]] == [0, 1]
    assert chain["hops"][0]["status"] == 302


@pytest.mark.asyncio
async def test_chains_limit_is_bounded(client, admin_key):
    resp = await client.get("/api/v1/admin/affiliates/aff1/chains", headers=admin_key, params={"limit": 500})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_stats_for_unknown_affiliate_are_empty(client, admin_key):
    stats = (await client.get("/api/v1/admin/affiliates/nobody/stats", headers=admin_key)).json()
    assert stats["aggregates"] == {}
    assert stats["clicks"]["total"] == 0
