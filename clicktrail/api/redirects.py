"""Redirect endpoints — every affiliate click flows through here.

Each handler runs the same per-click flow: validate → identify the click →
resolve the destination → persist (fire-and-forget) → respond. Bad input gets
a 400 before anything is written. Once the visitor is being redirected, any
unexpected failure sends them to FALLBACK_URL; paid traffic is never stranded
on an error page.
"""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field, ValidationError

from config.settings import settings
from clicktrail.api.deps import get_follower, get_recorder
from clicktrail.middleware.metrics import metrics
from clicktrail.models.tracking import (
    AggregateKind,
    CaptureEventIn,
    ChainMetadata,
    ClickKind,
    ClickStatus,
    DedupDecision,
    SessionCandidate,
)
from clicktrail.services.background import fire_and_forget
from clicktrail.services.capture_bridge import render_bridge_page
from clicktrail.services.click_ids import generate_click_id, generate_session_id, is_valid_click_id
from clicktrail.services.dedup import ClickDeduplicator
from clicktrail.services.recorder import AttributionRecorder, StorageError
from clicktrail.services.redirect_follower import RedirectFollower
from clicktrail.services.urls import client_ip, extract_params, is_http_url, merge_params_nested, set_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["redirects"])

SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


# ── Helpers ───────────────────────────────────────────────────────────────────

def public_base(request: Request) -> str:
    """Absolute base for links we hand out. API_BASE_URL wins over the request host."""
    return (settings.API_BASE_URL or str(request.base_url)).rstrip("/")


def _query(params: dict) -> str:
    return urlencode({k: v for k, v in params.items() if v})


def _reject(endpoint: str, message: str) -> HTTPException:
    metrics.record_outcome(endpoint, "rejected")
    return HTTPException(400, message)


def _fallback(endpoint: str) -> RedirectResponse:
    metrics.record_outcome(endpoint, "fallback")
    return RedirectResponse(url=settings.FALLBACK_URL, status_code=302)


def _redirect(endpoint: str, url: str) -> RedirectResponse:
    metrics.record_outcome(endpoint, "redirect")
    return RedirectResponse(url=url, status_code=302)


def _bridge(endpoint: str, request: Request, final_url: str, affiliate_id: str, click_id: str) -> HTMLResponse:
    pixel = f"{public_base(request)}/api/tracking-pixel?" + _query({
        "affiliate_id": affiliate_id,
        "click_id": click_id,
        "final_url": final_url,
    })
    metrics.record_outcome(endpoint, "bridge")
    return HTMLResponse(render_bridge_page(final_url, pixel))


def _peer(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


# ── Click redirect entry ──────────────────────────────────────────────────────

@router.get("/redirect")
async def redirect_click(
    request: Request,
    affiliate_id: Optional[str] = None,
    url: Optional[str] = None,
    campaign_id: Optional[str] = None,
    pub_id: Optional[str] = None,
    publisher_id: Optional[str] = None,
    source: Optional[str] = None,
    utm_source: Optional[str] = None,
    advertiser_id: Optional[str] = None,
    session_id: Optional[str] = None,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Identify the click, log it, and hand the visitor to the chain tracker."""
    if not affiliate_id or not url:
        raise _reject("redirect", "affiliate_id and url are required")
    if not is_http_url(url):
        raise _reject("redirect", "url must be an absolute http(s) URL")

    try:
        publisher_id = pub_id or publisher_id
        source = source or utm_source
        browser_session = next(
            (s for s in (session_id, request.cookies.get(settings.SESSION_COOKIE)) if is_valid_click_id(s)),
            None,
        ) or generate_session_id()
        ip = _peer(request)
        user_agent = request.headers.get("user-agent")

        try:
            decision = await ClickDeduplicator(recorder).resolve(
                SessionCandidate(affiliate_id, campaign_id, ip, browser_session),
                new_click={
                    "campaign_id": campaign_id,
                    "publisher_id": publisher_id,
                    "advertiser_id": advertiser_id,
                    "source": source,
                    "preview_url": url,
                    "query_params": dict(request.query_params),
                    "ip_address": ip,
                    "user_agent": user_agent,
                },
            )
        except StorageError:
            # Storage is down: keep the visitor moving with an unrecorded click id
            logger.exception("Click dedup failed for affiliate=%s; minting an unrecorded click id", affiliate_id)
            decision = DedupDecision(generate_click_id(), ClickKind.FIRST_CLICK)

        if not decision.already_processed:
            try:
                event = CaptureEventIn(
                    affiliate_id=affiliate_id,
                    click_id=decision.click_id,
                    final_url=url,
                    parameters=extract_params(url),
                    referrer=request.headers.get("referer"),
                    user_agent=user_agent,
                    campaign_id=campaign_id,
                    publisher_id=publisher_id,
                    source=source,
                    origin="click",
                )
            except ValidationError as e:
                logger.warning("Tracking log for click=%s not recorded: %s", decision.click_id, e.errors()[0]["msg"])
            else:
                fire_and_forget(
                    recorder.record_capture(AggregateKind.TRACKING_LOGS, event),
                    name=f"tracking_log:{decision.click_id}",
                )

        target = f"{public_base(request)}/api/track-chain?" + _query({
            "start_url": url,
            "click_id": decision.click_id,
            "affiliate_id": affiliate_id,
            "campaign_id": campaign_id,
            "pub_id": publisher_id,
            "source": source,
        })
        response = _redirect("redirect", target)
        response.set_cookie(
            settings.SESSION_COOKIE,
            browser_session,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
        return response
    except Exception:
        logger.exception("Redirect failed for affiliate=%s url=%s", affiliate_id, url)
        return _fallback("redirect")


# ── Chain tracking ────────────────────────────────────────────────────────────

@router.get("/track-chain")
async def track_chain(
    request: Request,
    start_url: Optional[str] = None,
    click_id: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    pub_id: Optional[str] = None,
    source: Optional[str] = None,
    recorder: AttributionRecorder = Depends(get_recorder),
    follower: RedirectFollower = Depends(get_follower),
):
    """Follow the full chain server-side, store it, and serve the HTML bridge."""
    if not start_url or not click_id or not affiliate_id:
        raise _reject("track_chain", "start_url, click_id and affiliate_id are required")
    if not is_http_url(start_url):
        raise _reject("track_chain", "start_url must be an absolute http(s) URL")
    if not is_valid_click_id(click_id):
        raise _reject("track_chain", "click_id is malformed")

    try:
        chain = await follower.follow(start_url)
        metrics.record_chain(chain.hop_count)

        fire_and_forget(
            recorder.record_chain(affiliate_id, chain, ChainMetadata(click_id, campaign_id, pub_id, source)),
            name=f"record_chain:{click_id}",
        )
        fire_and_forget(
            recorder.advance_status(click_id, ClickStatus.REDIRECTED, final_url=chain.final_url),
            name=f"advance_status:{click_id}",
        )
        return _bridge("track_chain", request, chain.final_url, affiliate_id, click_id)
    except Exception:
        logger.exception("Chain tracking failed for click=%s start=%s", click_id, start_url)
        return _fallback("track_chain")


# ── Click-by-id redirect ──────────────────────────────────────────────────────

@router.get("/track-click/{click_id}")
async def track_click(
    click_id: str,
    request: Request,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Redirect a generated tracking link to its preview URL, marking the click."""
    if not is_valid_click_id(click_id):
        logger.info("Rejected malformed click id %r", click_id)
        return _fallback("track_click")

    try:
        try:
            click = await recorder.get_click(click_id)
        except StorageError:
            logger.exception("Could not load click %s", click_id)
            return _fallback("track_click")
        if click is None or not click.preview_url:
            logger.info("Click %s not found or has no preview URL", click_id)
            return _fallback("track_click")

        domain = request.headers.get("host")
        fire_and_forget(
            recorder.mark_clicked(click_id, _peer(request), request.headers.get("user-agent"), domain),
            name=f"mark_clicked:{click_id}",
        )

        destination = set_params(click.preview_url, {
            "click_id": click_id,
            "campaign_id": click.campaign_id,
            "affiliate_id": click.affiliate_id,
            "source": "tracking_system",
            "tracking_domain": domain,
            "advertiser_id": click.advertiser_id,
        })
        return _redirect("track_click", destination)
    except Exception:
        logger.exception("Click redirect failed for click=%s", click_id)
        return _fallback("track_click")


# ── Proxy tracking (visual traversal) ─────────────────────────────────────────

@router.get("/proxy-track")
async def proxy_track(
    request: Request,
    url: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    click_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    pub_id: Optional[str] = None,
    mode: str = "redirect",
    recorder: AttributionRecorder = Depends(get_recorder),
    follower: RedirectFollower = Depends(get_follower),
):
    """Follow a chain and store it. mode=json returns the chain, otherwise the visitor is redirected."""
    if not url or not affiliate_id:
        raise _reject("proxy_track", "url and affiliate_id are required")
    if not is_http_url(url):
        raise _reject("proxy_track", "url must be an absolute http(s) URL")
    if click_id and not is_valid_click_id(click_id):
        raise _reject("proxy_track", "click_id is malformed")
    click_id = click_id or generate_click_id()

    try:
        chain = await follower.follow(url)
        metrics.record_chain(chain.hop_count)
        fire_and_forget(
            recorder.record_chain(
                affiliate_id, chain, ChainMetadata(click_id, campaign_id, pub_id, source="proxy_track"),
            ),
            name=f"record_chain:{click_id}",
        )

        if mode == "json":
            return {"click_id": click_id, "affiliate_id": affiliate_id, **chain.to_dict()}

        destination = merge_params_nested(chain.final_url, {
            "click_id": click_id,
            "campaign_id": campaign_id,
            "pub_id": pub_id,
        })
        if chain.needs_client_capture:
            return _bridge("proxy_track", request, destination, affiliate_id, click_id)
        return _redirect("proxy_track", destination)
    except Exception:
        if mode == "json":
            raise
        logger.exception("Proxy tracking failed for url=%s", url)
        return _fallback("proxy_track")


# ── JSON chain tracking ───────────────────────────────────────────────────────

class TrackChainRequest(BaseModel):
    affiliate_id: str = Field(..., min_length=1, max_length=200)
    redirection_url: str = Field(..., min_length=1, max_length=4000)
    click_id: Optional[str] = None
    campaign_id: Optional[str] = None
    publisher_id: Optional[str] = None
    source: Optional[str] = None


@router.post("/track-redirection-chain")
async def track_redirection_chain(
    body: TrackChainRequest,
    recorder: AttributionRecorder = Depends(get_recorder),
    follower: RedirectFollower = Depends(get_follower),
):
    """Follow a chain synchronously and return it. Storage failure is reported, not raised."""
    if not is_http_url(body.redirection_url):
        raise HTTPException(400, "redirection_url must be an absolute http(s) URL")
    if body.click_id and not is_valid_click_id(body.click_id):
        raise HTTPException(400, "click_id is malformed")

    click_id = body.click_id or generate_click_id()
    chain = await follower.follow(body.redirection_url)
    metrics.record_chain(chain.hop_count)

    entry_id = None
    try:
        entry_id = await recorder.record_chain(
            body.affiliate_id,
            chain,
            ChainMetadata(click_id, body.campaign_id, body.publisher_id, body.source),
        )
    except StorageError:
        logger.exception("Could not store chain for affiliate=%s", body.affiliate_id)

    return {
        "success": True,
        "stored": entry_id is not None,
        "entry_id": entry_id,
        "click_id": click_id,
        "affiliate_id": body.affiliate_id,
        "chain": chain.to_dict(),
    }
