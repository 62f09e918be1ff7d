"""Shared FastAPI dependencies."""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from config.settings import settings
from clicktrail.db.engine import get_session_factory
from clicktrail.services.recorder import AttributionRecorder
from clicktrail.services.redirect_follower import RedirectFollower


def get_recorder() -> AttributionRecorder:
    return AttributionRecorder(get_session_factory())


def get_follower() -> RedirectFollower:
    return RedirectFollower()


def verify_admin(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key (timing-safe). Used by link generation + affiliate stats."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(503, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(403, "Invalid admin key")
