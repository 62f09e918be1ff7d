"""SQLAlchemy ORM models for ClickTrail attribution storage."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from clicktrail.models.tracking import ClickStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ClickRow(Base):
    """One row per click identifier. click_id is immutable once assigned."""
    __tablename__ = "click_records"

    click_id = Column(String(64), primary_key=True)
    affiliate_id = Column(String(200), nullable=False, index=True)
    campaign_id = Column(String(200), nullable=True, index=True)
    publisher_id = Column(String(200), nullable=True)
    advertiser_id = Column(String(200), nullable=True)
    source = Column(String(200), nullable=True)
    preview_url = Column(String(4000), nullable=True)

    status = Column(String(20), nullable=False, default=ClickStatus.GENERATED.value)

    # Filled in when a physical click lands
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    click_domain = Column(String(255), nullable=True)
    click_count = Column(Integer, nullable=False, default=0)

    # Original query parameters of the inbound click (ordered, unique keys)
    query_params = Column(JSON, default=dict)

    # Reconciled from the client-side capture bridge
    final_url = Column(String(4000), nullable=True)
    clickref = Column(String(500), nullable=True)
    client_verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class UserSessionRow(Base):
    """One row per browser session and affiliate + campaign. Recording it twice is a no-op."""
    __tablename__ = "user_sessions"

    browser_session_id = Column(String(64), primary_key=True)
    affiliate_id = Column(String(200), nullable=False)
    campaign_id = Column(String(200), nullable=True)
    ip_address = Column(String(64), nullable=False)
    click_id = Column(String(64), nullable=False, index=True)
    click_kind = Column(String(20), nullable=False)  # first_click / repeat_click
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("ix_sessions_aff_ip_campaign_ts", "affiliate_id", "ip_address", "campaign_id", "created_at"),
    )


class AttributionAggregateRow(Base):
    """Per-affiliate counter row for one aggregate kind.

    total always equals the number of entries of this kind for the affiliate;
    both are written in the same transaction.
    """
    __tablename__ = "attribution_aggregates"

    kind = Column(String(40), primary_key=True)
    affiliate_id = Column(String(200), primary_key=True)
    total = Column(Integer, nullable=False, default=0)
    first_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    last_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ChainEntryRow(Base):
    """Append-only log of followed redirect chains."""
    __tablename__ = "chain_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    affiliate_id = Column(String(200), nullable=False)
    click_id = Column(String(64), nullable=True, index=True)
    start_url = Column(String(4000), nullable=False)
    final_url = Column(String(4000), nullable=False)
    hop_count = Column(Integer, nullable=False)
    redirect_count = Column(Integer, nullable=False)
    completed = Column(Boolean, nullable=False)
    needs_client_capture = Column(Boolean, nullable=False, default=False)
    final_parameters = Column(JSON, default=dict)
    campaign_id = Column(String(200), nullable=True)
    publisher_id = Column(String(200), nullable=True)
    source = Column(String(200), nullable=True)
    tracked_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    hops = relationship(
        "ChainHopRow",
        back_populates="entry",
        order_by="ChainHopRow.step",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_chain_entries_affiliate_ts", "affiliate_id", "tracked_at"),
    )


class ChainHopRow(Base):
    __tablename__ = "chain_hops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("chain_entries.id", ondelete="CASCADE"), nullable=False)
    step = Column(Integer, nullable=False)
    url = Column(String(4000), nullable=False)
    base_url = Column(String(4000), nullable=False)
    status = Column(Integer, nullable=True)
    method = Column(String(10), nullable=True)
    redirect_type = Column(String(20), nullable=True)
    headers = Column(JSON, default=dict)
    parameters = Column(JSON, default=dict)
    latency_ms = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)

    entry = relationship("ChainEntryRow", back_populates="hops")

    __table_args__ = (
        UniqueConstraint("entry_id", "step", name="uq_chain_hop_step"),
    )


class CaptureEventRow(Base):
    """Append-only capture log shared by the capture-style aggregates (see AggregateKind)."""
    __tablename__ = "capture_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(40), nullable=False)
    affiliate_id = Column(String(200), nullable=False)
    click_id = Column(String(200), nullable=False, index=True)
    final_url = Column(String(4000), nullable=False)
    parameters = Column(JSON, default=dict)
    clickref = Column(String(500), nullable=True)
    has_clickref = Column(Boolean, nullable=False, default=False)
    referrer = Column(String(2000), nullable=True)
    user_agent = Column(String(500), nullable=True)
    campaign_id = Column(String(200), nullable=True)
    publisher_id = Column(String(200), nullable=True)
    source = Column(String(200), nullable=True)
    origin = Column(String(20), nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("ix_capture_kind_affiliate", "kind", "affiliate_id"),
    )
