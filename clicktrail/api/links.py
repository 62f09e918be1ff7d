"""
Tracking link generation and per-affiliate admin views.

All endpoints here require the X-Admin-Key header.
"""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from clicktrail.api.deps import get_recorder, verify_admin
from clicktrail.api.redirects import public_base
from clicktrail.db.tables import ChainEntryRow
from clicktrail.models.tracking import ClickStatus
from clicktrail.services.click_ids import generate_click_id
from clicktrail.services.recorder import AttributionRecorder, StorageError
from clicktrail.services.urls import is_http_url

router = APIRouter(prefix="/api/v1", tags=["Links"], dependencies=[Depends(verify_admin)])
logger = logging.getLogger(__name__)


class CreateLinkRequest(BaseModel):
    affiliate_id: str = Field(..., min_length=1, max_length=200)
    preview_url: str = Field(..., min_length=1, max_length=4000)
    campaign_id: Optional[str] = Field(None, max_length=200)
    publisher_id: Optional[str] = Field(None, max_length=200)
    advertiser_id: Optional[str] = Field(None, max_length=200)
    source: Optional[str] = Field(None, max_length=200)


class CreateLinkResponse(BaseModel):
    click_id: str
    status: str
    tracking_link: str
    capture_script: str


def _serialize_chain(entry: ChainEntryRow) -> dict:
    return {
        "id": entry.id,
        "click_id": entry.click_id,
        "start_url": entry.start_url,
        "final_url": entry.final_url,
        "hop_count": entry.hop_count,
        "redirect_count": entry.redirect_count,
        "completed": entry.completed,
        "needs_client_capture": entry.needs_client_capture,
        "final_parameters": entry.final_parameters or {},
        "campaign_id": entry.campaign_id,
        "publisher_id": entry.publisher_id,
        "source": entry.source,
        "tracked_at": entry.tracked_at.isoformat() if entry.tracked_at else None,
        "hops": [
            {
                "step": hop.step,
                "url": hop.url,
                "base_url": hop.base_url,
                "status": hop.status,
                "method": hop.method,
                "redirect_type": hop.redirect_type,
                "parameters": hop.parameters or {},
                "latency_ms": hop.latency_ms,
                "error": hop.error,
            }
            for hop in entry.hops
        ],
    }


@router.post("/links", response_model=CreateLinkResponse, status_code=201)
async def create_link(
    body: CreateLinkRequest,
    request: Request,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Mint a pending click and return its tracking link."""
    if not is_http_url(body.preview_url):
        raise HTTPException(400, "preview_url must be an absolute http(s) URL")

    click_id = generate_click_id()
    try:
        await recorder.create_click(
            click_id,
            body.affiliate_id,
            status=ClickStatus.PENDING,
            campaign_id=body.campaign_id,
            publisher_id=body.publisher_id,
            advertiser_id=body.advertiser_id,
            source=body.source,
            preview_url=body.preview_url,
        )
    except StorageError:
        logger.exception("Could not create tracking link for affiliate=%s", body.affiliate_id)
        raise HTTPException(503, "Attribution storage unavailable")

    base = public_base(request)
    script_query = {"affiliate_id": body.affiliate_id, "click_id": click_id}
    if body.campaign_id:
        script_query["campaign_id"] = body.campaign_id
    if body.publisher_id:
        script_query["pub_id"] = body.publisher_id

    logger.info("Created tracking link %s for affiliate=%s", click_id, body.affiliate_id)
    return CreateLinkResponse(
        click_id=click_id,
        status=ClickStatus.PENDING.value,
        tracking_link=f"{base}/api/track-click/{click_id}",
        capture_script=f"{base}/api/capture.js?{urlencode(script_query)}",
    )


@router.get("/admin/affiliates/{affiliate_id}/stats")
async def affiliate_stats(
    affiliate_id: str,
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Aggregate counters and click status breakdown for one affiliate."""
    try:
        return await recorder.affiliate_stats(affiliate_id)
    except StorageError:
        logger.exception("Could not load stats for affiliate=%s", affiliate_id)
        raise HTTPException(503, "Attribution storage unavailable")


@router.get("/admin/affiliates/{affiliate_id}/chains")
async def affiliate_chains(
    affiliate_id: str,
    limit: int = Query(20, ge=1, le=100),
    recorder: AttributionRecorder = Depends(get_recorder),
):
    """Most recent followed chains, newest first."""
    try:
        entries = await recorder.list_chains(affiliate_id, limit=limit)
    except StorageError:
        logger.exception("Could not load chains for affiliate=%s", affiliate_id)
        raise HTTPException(503, "Attribution storage unavailable")
    return {
        "affiliate_id": affiliate_id,
        "count": len(entries),
        "chains": [_serialize_chain(e) for e in entries],
    }
