"""Tests for the attribution recorder — append-and-count, click lifecycle, sessions."""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from clicktrail.models.tracking import (
    AggregateKind,
    CaptureEventIn,
    ChainMetadata,
    ChainResult,
    ClickKind,
    ClickStatus,
    Hop,
)
from clicktrail.services.recorder import AttributionRecorder, StorageError


def _chain(n_hops: int = 2, error_last: bool = False) -> ChainResult:
    hops = [
        Hop(step=i, url=f"https://hop.example/{i}?k={i}", base_url=f"https://hop.example/{i}", status=302)
        for i in range(n_hops)
    ]
    if error_last:
        hops[-1].status = None
        hops[-1].error = "Connection refused"
    return ChainResult(start_url=hops[0].url, hops=hops, completed=not error_last)


def _capture(affiliate_id: str = "aff1", click_id: str = "clk_1", **kwargs) -> CaptureEventIn:
    return CaptureEventIn(
        affiliate_id=affiliate_id,
        click_id=click_id,
        final_url="https://shop.example/p?clickref=abc",
        parameters={"clickref": "abc"},
        **kwargs,
    )


# ── Chains ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_chain_creates_aggregate_with_count_one(recorder):
    entry_id = await recorder.record_chain("aff1", _chain(), ChainMetadata(click_id="clk_1"))

    agg = await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1")
    assert entry_id > 0
    assert agg.total == 1
    assert agg.first_at == agg.last_at

    chains = await recorder.list_chains("aff1")
    assert len(chains) == 1
    assert [h.step for h in chains[0].hops] == [0, 1]
    assert chains[0].final_url == "https://hop.example/1?k=1"
    assert chains[0].click_id == "clk_1"


@pytest.mark.asyncio
async def test_appends_increment_by_exactly_one(recorder):
    for _ in range(3):
        await recorder.record_chain("aff1", _chain())

    agg = await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1")
    assert agg.total == 3
    assert await recorder.count_entries(AggregateKind.REDIRECT_CHAINS, "aff1") == 3


@pytest.mark.asyncio
async def test_last_at_never_moves_backwards(recorder):
    await recorder.record_chain("aff1", _chain())
    first = await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1")
    await recorder.record_chain("aff1", _chain())
    second = await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1")

    assert second.last_at >= first.last_at
    assert second.first_at == first.first_at


@pytest.mark.asyncio
async def test_concurrent_recordings_keep_counter_equal_to_entries(recorder):
    await asyncio.gather(*(recorder.record_chain("aff1", _chain()) for _ in range(15)))
    await asyncio.gather(*(
        recorder.record_capture(AggregateKind.CLIENT_FINAL_URLS, _capture(click_id=f"clk_{i}"))
        for i in range(15)
    ))

    chains = await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1")
    captures = await recorder.get_aggregate(AggregateKind.CLIENT_FINAL_URLS, "aff1")
    assert chains.total == await recorder.count_entries(AggregateKind.REDIRECT_CHAINS, "aff1") == 15
    assert captures.total == await recorder.count_entries(AggregateKind.CLIENT_FINAL_URLS, "aff1") == 15


@pytest.mark.asyncio
async def test_error_hop_allowed_only_last(recorder):
    await recorder.record_chain("aff1", _chain(error_last=True))

    bad = _chain(3)
    bad.hops[0].error = "boom"
    with pytest.raises(ValueError):
        await recorder.record_chain("aff1", bad)


@pytest.mark.asyncio
async def test_malformed_chains_rejected(recorder):
    gap = _chain(3)
    gap.hops[1].step = 5
    with pytest.raises(ValueError):
        await recorder.record_chain("aff1", gap)
    with pytest.raises(ValueError):
        await recorder.record_chain("", _chain())
    with pytest.raises(ValueError):
        await recorder.record_chain("aff1", ChainResult(start_url="https://a.example/", hops=[], completed=False))

    assert await recorder.get_aggregate(AggregateKind.REDIRECT_CHAINS, "aff1") is None


# ── Captures ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_capture_aggregates_are_independent(recorder):
    await recorder.record_capture(AggregateKind.URL_ANALYSIS, _capture())
    await recorder.record_capture(AggregateKind.URL_ANALYSIS, _capture())
    await recorder.record_capture(AggregateKind.FINAL_URLS_WITH_CLICKREF, _capture(origin="pixel"))

    assert (await recorder.get_aggregate(AggregateKind.URL_ANALYSIS, "aff1")).total == 2
    assert (await recorder.get_aggregate(AggregateKind.FINAL_URLS_WITH_CLICKREF, "aff1")).total == 1
    assert await recorder.get_aggregate(AggregateKind.CLIENT_FINAL_URLS, "aff1") is None


@pytest.mark.asyncio
async def test_capture_clickref_taken_from_parameters(recorder):
    await recorder.record_capture(AggregateKind.CLIENT_FINAL_URLS, _capture())

    [event] = await recorder.list_captures(AggregateKind.CLIENT_FINAL_URLS, "aff1")
    assert event.clickref == "abc"
    assert event.has_clickref is True


@pytest.mark.asyncio
async def test_chain_kind_is_not_a_capture(recorder):
    with pytest.raises(ValueError):
        await recorder.record_capture(AggregateKind.REDIRECT_CHAINS, _capture())


def test_capture_event_validates_required_fields():
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        CaptureEventIn(affiliate_id="", click_id="clk_1", final_url="https://a.example/")
    with pytest.raises(ValidationError):
        CaptureEventIn(affiliate_id="aff1", click_id="clk_1")


# ── Click lifecycle ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_click_never_overwrites(recorder):
    assert await recorder.create_click("c123", "aff1", status=ClickStatus.PENDING, preview_url="https://a.example/")
    assert not await recorder.create_click("c123", "aff2", preview_url="https://b.example/")

    click = await recorder.get_click("c123")
    assert click.affiliate_id == "aff1"
    assert click.preview_url == "https://a.example/"


@pytest.mark.asyncio
async def test_pending_click_becomes_clicked_and_never_reverts(recorder):
    await recorder.create_click("c123", "aff1", status=ClickStatus.PENDING, preview_url="https://a.example/")

    assert await recorder.mark_clicked("c123", "203.0.113.7", "Mozilla/5.0", "trk.example")
    click = await recorder.get_click("c123")
    assert click.status == ClickStatus.CLICKED.value
    assert click.ip_address == "203.0.113.7"
    assert click.user_agent == "Mozilla/5.0"
    assert click.clicked_at is not None
    assert click.click_count == 1

    assert not await recorder.advance_status("c123", ClickStatus.PENDING)
    assert not await recorder.advance_status("c123", ClickStatus.REDIRECTED)
    assert (await recorder.get_click("c123")).status == ClickStatus.CLICKED.value


@pytest.mark.asyncio
async def test_repeat_clicks_only_count(recorder):
    await recorder.create_click("c123", "aff1", status=ClickStatus.PENDING)
    await recorder.mark_clicked("c123", "203.0.113.7", "UA-1")
    first_clicked_at = (await recorder.get_click("c123")).clicked_at

    assert not await recorder.mark_clicked("c123", "198.51.100.9", "UA-2")
    click = await recorder.get_click("c123")
    assert click.click_count == 2
    assert click.ip_address == "203.0.113.7"
    assert click.clicked_at == first_clicked_at


@pytest.mark.asyncio
async def test_advance_status_moves_forward(recorder):
    await recorder.create_click("clk_a", "aff1")
    assert await recorder.advance_status("clk_a", ClickStatus.REDIRECTED, final_url="https://shop.example/")
    click = await recorder.get_click("clk_a")
    assert click.status == "redirected"
    assert click.final_url == "https://shop.example/"


@pytest.mark.asyncio
async def test_reconcile_client_capture(recorder):
    await recorder.create_click("clk_a", "aff1")
    assert await recorder.reconcile_client_capture("clk_a", "https://shop.example/?clickref=xyz", "xyz")
    click = await recorder.get_click("clk_a")
    assert click.clickref == "xyz"
    assert click.final_url == "https://shop.example/?clickref=xyz"
    assert click.client_verified_at is not None

    assert not await recorder.reconcile_client_capture("missing", "https://x.example/", None)


@pytest.mark.asyncio
async def test_affiliate_stats(recorder):
    await recorder.create_click("clk_a", "aff1", status=ClickStatus.PENDING)
    await recorder.create_click("clk_b", "aff1")
    await recorder.mark_clicked("clk_a", "203.0.113.7", None)
    await recorder.reconcile_client_capture("clk_a", "https://shop.example/?clickref=r", "r")
    await recorder.record_chain("aff1", _chain())

    stats = await recorder.affiliate_stats("aff1")
    assert stats["aggregates"]["redirect_chains"]["total"] == 1
    assert stats["clicks"]["total"] == 2
    assert stats["clicks"]["by_status"] == {"clicked": 1, "generated": 1}
    assert stats["clicks"]["with_clickref"] == 1


# ── Sessions ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_record_session_is_idempotent(recorder):
    new_click = {"preview_url": "https://shop.example/"}
    assert await recorder.record_session("ses_1", "aff1", "camp", "203.0.113.7", "clk_1", ClickKind.FIRST_CLICK, new_click)
    assert not await recorder.record_session("ses_1", "aff1", "camp", "203.0.113.7", "clk_2", ClickKind.FIRST_CLICK, new_click)

    assert (await recorder.find_session("ses_1")).click_id == "clk_1"
    assert await recorder.get_click("clk_2") is None
    assert (await recorder.get_click("clk_1")).click_count == 1


@pytest.mark.asyncio
async def test_find_recent_session_matches_ip_and_campaign(recorder):
    await recorder.record_session("ses_1", "aff1", "camp", "203.0.113.7", "clk_1", ClickKind.FIRST_CLICK, {})
    await recorder.record_session("ses_2", "aff1", None, "203.0.113.7", "clk_2", ClickKind.FIRST_CLICK, {})

    assert (await recorder.find_recent_session("aff1", "203.0.113.7", "camp", None)).click_id == "clk_1"
    assert (await recorder.find_recent_session("aff1", "203.0.113.7", None, None)).click_id == "clk_2"
    assert await recorder.find_recent_session("aff1", "203.0.113.7", "other", None) is None
    assert await recorder.find_recent_session("aff1", "198.51.100.1", "camp", None) is None
    assert await recorder.find_recent_session("aff2", "203.0.113.7", "camp", None) is None


# ── Storage failures ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_storage_failures_surface_as_storage_error():
    class _Broken:
        def __call__(self):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    recorder = AttributionRecorder(_Broken())
    with pytest.raises(StorageError):
        await recorder.record_chain("aff1", _chain())
    with pytest.raises(StorageError):
        await recorder.get_click("clk_1")
