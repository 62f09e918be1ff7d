"""Click deduplication — new click or continuation of an earlier one?

  same browser session, affiliate and campaign seen before → already processed, nothing recorded
  same affiliate, IP and campaign inside the window        → repeat_click, reuse that click id
  otherwise                                                → first_click, mint a new click id

The lookback window is explicit: an IP reused months later by someone else
should not inherit an old click id.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from config.settings import settings
from clicktrail.models.tracking import ClickKind, DedupDecision, SessionCandidate, utcnow
from clicktrail.services.click_ids import generate_click_id, scoped_session_id
from clicktrail.services.recorder import AttributionRecorder

logger = logging.getLogger(__name__)

# IPs we couldn't determine must never be matched against each other
_UNMATCHABLE_IPS = {"", "unknown"}


def default_window() -> timedelta | None:
    hours = settings.DEDUP_WINDOW_HOURS
    return timedelta(hours=hours) if hours > 0 else None


class ClickDeduplicator:
    def __init__(self, recorder: AttributionRecorder, window: timedelta | None = None, *, unbounded: bool = False):
        self.recorder = recorder
        self.window = None if unbounded else (window if window is not None else default_window())

    async def resolve(self, candidate: SessionCandidate, new_click: dict | None = None) -> DedupDecision:
        """Decide the click id for this visit and record the session.

        new_click holds the ClickRecord fields to store when this turns out to
        be a first click.
        """
        session_key = scoped_session_id(candidate.browser_session_id, candidate.affiliate_id, candidate.campaign_id)
        existing = await self.recorder.find_session(session_key)
        if existing is not None:
            logger.debug(
                "Browser session %s already processed for affiliate=%s",
                candidate.browser_session_id, candidate.affiliate_id,
            )
            return DedupDecision(existing.click_id, ClickKind(existing.click_kind), already_processed=True)

        prior = None
        if candidate.ip_address not in _UNMATCHABLE_IPS:
            since = utcnow() - self.window if self.window is not None else None
            prior = await self.recorder.find_recent_session(
                candidate.affiliate_id, candidate.ip_address, candidate.campaign_id, since,
            )

        if prior is not None:
            click_id, kind = prior.click_id, ClickKind.REPEAT_CLICK
        else:
            click_id, kind = generate_click_id(), ClickKind.FIRST_CLICK

        inserted = await self.recorder.record_session(
            browser_session_id=session_key,
            affiliate_id=candidate.affiliate_id,
            campaign_id=candidate.campaign_id,
            ip_address=candidate.ip_address,
            click_id=click_id,
            kind=kind,
            new_click=new_click if kind == ClickKind.FIRST_CLICK else None,
        )
        if not inserted:
            # A concurrent load of the same browser session got there first
            winner = await self.recorder.find_session(session_key)
            if winner is not None:
                return DedupDecision(winner.click_id, ClickKind(winner.click_kind), already_processed=True)

        logger.info(
            "%s for affiliate=%s campaign=%s click=%s",
            kind.value, candidate.affiliate_id, candidate.campaign_id, click_id,
        )
        return DedupDecision(click_id, kind)
