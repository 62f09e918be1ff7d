"""Click and browser-session identifiers.

Identifiers appear in public URLs, so they are random (uuid4, 122 bits of
entropy) rather than derived from a counter or the request. Nothing is shared
between calls, so concurrent requests never coordinate.
"""
from __future__ import annotations

import hashlib
import re
import uuid

CLICK_PREFIX = "clk_"
SESSION_PREFIX = "ses_"

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def generate_click_id() -> str:
    return f"{CLICK_PREFIX}{uuid.uuid4().hex}"


def generate_session_id() -> str:
    return f"{SESSION_PREFIX}{uuid.uuid4().hex}"


def scoped_session_id(browser_session_id: str, affiliate_id: str, campaign_id: str | None) -> str:
    """The browser session as seen by one affiliate + campaign.

    One cookie covers every link a browser clicks; deriving the key keeps a
    visit to another affiliate or campaign from counting as a reload.
    """
    payload = f"{browser_session_id}|{affiliate_id}|{campaign_id or ''}".encode()
    return f"{SESSION_PREFIX}{hashlib.sha256(payload).hexdigest()[:32]}"


def is_valid_click_id(value: str | None) -> bool:
    """Shape check for ids arriving in paths/query strings.

    Links minted by older tooling don't carry the clk_ prefix, so only the
    character set and length are enforced.
    """
    return bool(value) and bool(_ID_RE.match(value))
