"""Final-URL capture endpoints — server fetch, browser report, pixel, capture script."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config.settings import settings
from clicktrail.api.deps import get_follower, get_recorder
from clicktrail.api.redirects import public_base
from clicktrail.models.tracking import AggregateKind, CaptureEventIn
from clicktrail.services.background import fire_and_forget
from clicktrail.services.capture_bridge import PIXEL_GIF, render_capture_script
from clicktrail.services.click_ids import is_valid_click_id
from clicktrail.services.recorder import AttributionRecorder, StorageError
from clicktrail.services.redirect_follower import RedirectFollower
from clicktrail.services.urls import extract_params, is_http_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["captures"])

_PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


# ── Schemas ───────────────────────────────────────────────────────────────────

class ClientCaptureRequest(BaseModel):
    """What the capture script posts once the landing page has settled."""
    model_config = ConfigDict(populate_by_name=True)

    affiliate_id: Optional[str] = Field(None, alias="affiliateId")
    click_id: Optional[str] = Field(None, alias="clickId")
    final_url: Optional[str] = Field(None, alias="finalUrl")
    parameters: dict[str, str] = Field(default_factory=dict)
    user_agent: Optional[str] = Field(None, alias="userAgent")
    referrer: Optional[str] = None
    campaign_id: Optional[str] = Field(None, alias="campaignId")
    publisher_id: Optional[str] = Field(None, alias="publisherId")
    timestamp: Optional[str] = None


# ── Server-side final URL analysis ────────────────────────────────────────────

@router.get("/track-final")
async def track_final(
    affiliate_id: Optional[str] = None,
    click_id: Optional[str] = None,
    current_url: Optional[str] = None,
    recorder: AttributionRecorder = Depends(get_recorder),
    follower: RedirectFollower = Depends(get_follower),
):
    """Re-derive the final URL for a click and look for the attribution param."""
    if not affiliate_id or not click_id:
        raise HTTPException(400, "affiliate_id and click_id are required")
    if not is_valid_click_id(click_id):
        raise HTTPException(400, "click_id is malformed")

    start_url = current_url
    if not start_url:
        try:
            click = await recorder.get_click(click_id)
        except StorageError:
            logger.exception("Could not load click %s", click_id)
            raise HTTPException(503, "Attribution storage unavailable")
        start_url = click.preview_url if click else None
    if not start_url:
        raise HTTPException(404, "No URL to analyze for this click")
    if not is_http_url(start_url):
        raise HTTPException(400, "current_url must be an absolute http(s) URL")

    chain = await follower.follow(start_url)
    parameters = chain.final_parameters
    clickref = parameters.get(settings.CAPTURE_PARAM)

    try:
        event = CaptureEventIn(
            affiliate_id=affiliate_id,
            click_id=click_id,
            final_url=chain.final_url,
            parameters=parameters,
            clickref=clickref,
            origin="server_fetch",
        )
    except ValidationError as e:
        logger.warning("URL analysis for click=%s not recorded: %s", click_id, e.errors()[0]["msg"])
    else:
        fire_and_forget(
            recorder.record_capture(AggregateKind.URL_ANALYSIS, event),
            name=f"url_analysis:{click_id}",
        )

    return {
        "success": True,
        "affiliate_id": affiliate_id,
        "click_id": click_id,
        "final_url": chain.final_url,
        "clickref": clickref,
        "has_clickref": bool(clickref),
        "needs_client_capture": chain.needs_client_capture,
        "chain": chain.to_dict(),
    }


# ── Browser-reported final URL ────────────────────────────────────────────────

@router.post("/capture-final")
async def capture_final(
    body: ClientCaptureRequest,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Store what the browser actually landed on and attach it to the click."""
    if not body.affiliate_id or not body.click_id or not body.final_url:
        raise HTTPException(400, "affiliateId, clickId and finalUrl are required")

    parameters = body.parameters or extract_params(body.final_url)
    clickref = parameters.get(settings.CAPTURE_PARAM)
    try:
        event = CaptureEventIn(
            affiliate_id=body.affiliate_id,
            click_id=body.click_id,
            final_url=body.final_url,
            parameters=parameters,
            clickref=clickref,
            referrer=body.referrer,
            user_agent=body.user_agent,
            campaign_id=body.campaign_id,
            publisher_id=body.publisher_id,
            source="capture_bridge",
            origin="client_side",
        )
    except ValidationError as e:
        raise HTTPException(400, f"Invalid capture: {e.errors()[0]['msg']}")

    try:
        await recorder.record_capture(AggregateKind.CLIENT_FINAL_URLS, event)
        reconciled = await recorder.reconcile_client_capture(body.click_id, body.final_url, clickref)
    except StorageError:
        logger.exception("Could not store client capture for click=%s", body.click_id)
        raise HTTPException(503, "Attribution storage unavailable")

    if not reconciled:
        logger.info("Client capture for unknown click %s stored without reconciliation", body.click_id)
    return {
        "success": True,
        "click_id": body.click_id,
        "clickref": clickref,
        "reconciled": reconciled,
    }


# ── Tracking pixel ────────────────────────────────────────────────────────────

@router.get("/tracking-pixel")
async def tracking_pixel(
    request: Request,
    affiliate_id: Optional[str] = None,
    click_id: Optional[str] = None,
    final_url: Optional[str] = None,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Passive confirmation. Always answers with the GIF, whatever happens to the capture."""
    try:
        if affiliate_id and click_id and final_url:
            parameters = extract_params(final_url)
            fire_and_forget(
                recorder.record_capture(AggregateKind.FINAL_URLS_WITH_CLICKREF, CaptureEventIn(
                    affiliate_id=affiliate_id,
                    click_id=click_id,
                    final_url=final_url,
                    parameters=parameters,
                    clickref=parameters.get(settings.CAPTURE_PARAM),
                    referrer=request.headers.get("referer"),
                    user_agent=request.headers.get("user-agent"),
                    origin="pixel",
                )),
                name=f"pixel:{click_id}",
            )
        else:
            logger.debug("Tracking pixel hit without affiliate_id/click_id/final_url")
    except Exception:
        logger.exception("Tracking pixel capture failed for click=%s", click_id)

    return Response(content=PIXEL_GIF, media_type="image/gif", headers=_PIXEL_HEADERS)


# ── Capture script ────────────────────────────────────────────────────────────

@router.get("/capture.js")
async def capture_script(
    request: Request,
    affiliate_id: Optional[str] = None,
    click_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    pub_id: Optional[str] = None,
):
    """Script for merchant landing pages; reports the settled URL back to us."""
    if not affiliate_id or not click_id:
        raise HTTPException(400, "affiliate_id and click_id are required")
    script = render_capture_script(
        affiliate_id,
        click_id,
        campaign_id=campaign_id,
        publisher_id=pub_id,
        base_url=public_base(request),
    )
    return Response(content=script, media_type="application/javascript")
