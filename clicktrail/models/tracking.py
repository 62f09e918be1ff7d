"""Tracking data models — the typed shapes that cross the storage boundary."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClickStatus(str, Enum):
    """Click lifecycle. Order matters: status only ever moves forward."""
    GENERATED = "generated"
    PENDING = "pending"
    REDIRECTED = "redirected"
    CLICKED = "clicked"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def earlier(self) -> list["ClickStatus"]:
        """Statuses that may legally advance to this one."""
        return _STATUS_ORDER[: self.rank]


_STATUS_ORDER = [
    ClickStatus.GENERATED,
    ClickStatus.PENDING,
    ClickStatus.REDIRECTED,
    ClickStatus.CLICKED,
]


class AggregateKind(str, Enum):
    """Per-affiliate append-and-count aggregates."""
    REDIRECT_CHAINS = "redirect_chains"
    FINAL_URLS_WITH_CLICKREF = "final_urls_with_clickref"
    CLIENT_FINAL_URLS = "client_final_urls"
    URL_ANALYSIS = "url_analysis"
    TRACKING_LOGS = "tracking_logs"


class ClickKind(str, Enum):
    FIRST_CLICK = "first_click"
    REPEAT_CLICK = "repeat_click"


class RedirectType(str, Enum):
    HTTP = "http_redirect"
    META_REFRESH = "meta_refresh"
    JS = "js_redirect"


# ── Redirect chains ──────────────────────────────────────────────────────────

@dataclass
class Hop:
    """One step of a redirect chain. step 0 is the start URL."""
    step: int
    url: str
    base_url: str
    parameters: dict[str, str] = field(default_factory=dict)
    status: Optional[int] = None
    method: Optional[str] = None
    redirect_type: Optional[RedirectType] = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "url": self.url,
            "base_url": self.base_url,
            "parameters": self.parameters,
            "status": self.status,
            "method": self.method,
            "redirect_type": self.redirect_type.value if self.redirect_type else None,
            "headers": self.headers,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ChainResult:
    start_url: str
    hops: list[Hop]
    completed: bool
    needs_client_capture: bool = False

    @property
    def final_url(self) -> str:
        return self.hops[-1].url if self.hops else self.start_url

    @property
    def hop_count(self) -> int:
        return len(self.hops)

    @property
    def redirect_count(self) -> int:
        return max(0, len(self.hops) - 1)

    @property
    def final_parameters(self) -> dict[str, str]:
        return self.hops[-1].parameters if self.hops else {}

    def to_dict(self) -> dict:
        return {
            "start_url": self.start_url,
            "final_url": self.final_url,
            "completed": self.completed,
            "hop_count": self.hop_count,
            "redirect_count": self.redirect_count,
            "needs_client_capture": self.needs_client_capture,
            "hops": [h.to_dict() for h in self.hops],
        }


@dataclass(frozen=True)
class ChainMetadata:
    click_id: Optional[str] = None
    campaign_id: Optional[str] = None
    publisher_id: Optional[str] = None
    source: Optional[str] = None


# ── Captures ─────────────────────────────────────────────────────────────────

class CaptureEventIn(BaseModel):
    """A single capture appended to one of the per-affiliate aggregates."""
    model_config = ConfigDict(str_strip_whitespace=True)

    affiliate_id: str = Field(..., min_length=1, max_length=200)
    click_id: str = Field(..., min_length=1, max_length=200)
    final_url: str = Field(..., min_length=1, max_length=4000)
    parameters: dict[str, str] = Field(default_factory=dict)
    clickref: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    campaign_id: Optional[str] = None
    publisher_id: Optional[str] = None
    source: Optional[str] = None
    origin: str = "server_fetch"  # pixel, client_side, server_fetch, click


# ── Sessions / dedup ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionCandidate:
    affiliate_id: str
    campaign_id: Optional[str]
    ip_address: str
    browser_session_id: str


@dataclass(frozen=True)
class DedupDecision:
    click_id: str
    kind: ClickKind
    already_processed: bool = False

    @property
    def is_repeat(self) -> bool:
        return self.kind == ClickKind.REPEAT_CLICK or self.already_processed
