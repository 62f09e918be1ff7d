"""
Attribution recorder — the only component that touches attribution storage.

Every per-affiliate aggregate is append-and-count: one counter row per
(kind, affiliate) plus an append-only entry log. Appends run in a single
transaction:

  INSERT aggregate ... ON CONFLICT DO NOTHING   (first writer creates it)
  INSERT entry
  UPDATE aggregate SET total = total + 1, last_at = max(last_at, now)

The increment is evaluated by the database, so concurrent clicks for the same
affiliate can't lose updates the way a read-modify-write counter would.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clicktrail.db.tables import (
    AttributionAggregateRow,
    CaptureEventRow,
    ChainEntryRow,
    ChainHopRow,
    ClickRow,
    UserSessionRow,
)
from clicktrail.models.tracking import (
    AggregateKind,
    CaptureEventIn,
    ChainMetadata,
    ChainResult,
    ClickKind,
    ClickStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_CAPTURE_KINDS = frozenset(AggregateKind) - {AggregateKind.REDIRECT_CHAINS}


class StorageError(Exception):
    """Attribution storage is unavailable or rejected a write."""


def _clip(value: str | None, limit: int) -> str | None:
    return value[:limit] if value else None


def _validate_chain(affiliate_id: str, chain: ChainResult) -> None:
    if not affiliate_id:
        raise ValueError("affiliate_id is required")
    if not chain.hops:
        raise ValueError("chain has no hops")
    for i, hop in enumerate(chain.hops):
        if hop.step != i:
            raise ValueError(f"hop steps must be 0..n-1 in order, got {hop.step} at position {i}")
        if hop.error and i != len(chain.hops) - 1:
            raise ValueError("only the last hop of a chain may carry an error")


class AttributionRecorder:
    """Persists clicks, sessions, chains and captures.

    Takes the session factory as its storage handle; nothing here reaches for
    a module-level engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    @staticmethod
    def _insert_ignore(session: AsyncSession, table):
        """INSERT ... ON CONFLICT DO NOTHING for the bound dialect."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(table).on_conflict_do_nothing()
        if dialect == "sqlite":
            return sqlite.insert(table).on_conflict_do_nothing()
        raise StorageError(f"Unsupported database dialect: {dialect}")

    async def _append_count(self, session: AsyncSession, kind: AggregateKind, affiliate_id: str, now: datetime) -> None:
        """Create the aggregate if needed, then atomically bump its counter."""
        await session.execute(
            self._insert_ignore(session, AttributionAggregateRow).values(
                kind=kind.value,
                affiliate_id=affiliate_id,
                total=0,
                first_at=now,
                last_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            update(AttributionAggregateRow)
            .where(
                AttributionAggregateRow.kind == kind.value,
                AttributionAggregateRow.affiliate_id == affiliate_id,
            )
            .values(
                total=AttributionAggregateRow.total + 1,
                last_at=case(
                    (AttributionAggregateRow.last_at < now, now),
                    else_=AttributionAggregateRow.last_at,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    # ── Chains ───────────────────────────────────────────────────────────────

    async def record_chain(
        self,
        affiliate_id: str,
        chain: ChainResult,
        metadata: ChainMetadata | None = None,
    ) -> int:
        """Append a followed chain to the affiliate's redirect_chains log. Returns the entry id."""
        _validate_chain(affiliate_id, chain)
        metadata = metadata or ChainMetadata()
        now = utcnow()

        async with self._transaction() as session:
            entry = ChainEntryRow(
                affiliate_id=affiliate_id,
                click_id=metadata.click_id,
                start_url=chain.start_url,
                final_url=chain.final_url,
                hop_count=chain.hop_count,
                redirect_count=chain.redirect_count,
                completed=chain.completed,
                needs_client_capture=chain.needs_client_capture,
                final_parameters=chain.final_parameters,
                campaign_id=metadata.campaign_id,
                publisher_id=metadata.publisher_id,
                source=metadata.source,
                tracked_at=now,
                hops=[
                    ChainHopRow(
                        step=hop.step,
                        url=hop.url,
                        base_url=hop.base_url,
                        status=hop.status,
                        method=hop.method,
                        redirect_type=hop.redirect_type.value if hop.redirect_type else None,
                        headers=hop.headers,
                        parameters=hop.parameters,
                        latency_ms=hop.latency_ms,
                        error=hop.error,
                        timestamp=hop.timestamp,
                    )
                    for hop in chain.hops
                ],
            )
            session.add(entry)
            await session.flush()
            await self._append_count(session, AggregateKind.REDIRECT_CHAINS, affiliate_id, now)
            entry_id = entry.id

        logger.info(
            "Stored chain for affiliate=%s click=%s hops=%d final=%s",
            affiliate_id, metadata.click_id, chain.hop_count, chain.final_url,
        )
        return entry_id

    async def list_chains(self, affiliate_id: str, limit: int = 20) -> list[ChainEntryRow]:
        async with self._read() as session:
            result = await session.execute(
                select(ChainEntryRow)
                .where(ChainEntryRow.affiliate_id == affiliate_id)
                .order_by(ChainEntryRow.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Captures ─────────────────────────────────────────────────────────────

    async def record_capture(self, kind: AggregateKind, event: CaptureEventIn) -> None:
        if kind not in _CAPTURE_KINDS:
            raise ValueError(f"{kind} is not a capture aggregate")
        now = utcnow()
        clickref = event.clickref if event.clickref is not None else event.parameters.get("clickref")

        async with self._transaction() as session:
            session.add(CaptureEventRow(
                kind=kind.value,
                affiliate_id=event.affiliate_id,
                click_id=event.click_id,
                final_url=event.final_url,
                parameters=event.parameters,
                clickref=_clip(clickref, 500),
                has_clickref=bool(clickref),
                referrer=_clip(event.referrer, 2000),
                user_agent=_clip(event.user_agent, 500),
                campaign_id=event.campaign_id,
                publisher_id=event.publisher_id,
                source=event.source,
                origin=event.origin,
                captured_at=now,
            ))
            await session.flush()
            await self._append_count(session, kind, event.affiliate_id, now)

        logger.info("Stored %s capture for affiliate=%s click=%s", kind.value, event.affiliate_id, event.click_id)

    async def list_captures(self, kind: AggregateKind, affiliate_id: str, limit: int = 50) -> list[CaptureEventRow]:
        async with self._read() as session:
            result = await session.execute(
                select(CaptureEventRow)
                .where(CaptureEventRow.kind == kind.value, CaptureEventRow.affiliate_id == affiliate_id)
                .order_by(CaptureEventRow.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Aggregates ───────────────────────────────────────────────────────────

    async def get_aggregate(self, kind: AggregateKind, affiliate_id: str) -> Optional[AttributionAggregateRow]:
        async with self._read() as session:
            return await session.get(AttributionAggregateRow, (kind.value, affiliate_id))

    async def count_entries(self, kind: AggregateKind, affiliate_id: str) -> int:
        async with self._read() as session:
            if kind == AggregateKind.REDIRECT_CHAINS:
                stmt = select(func.count(ChainEntryRow.id)).where(ChainEntryRow.affiliate_id == affiliate_id)
            else:
                stmt = select(func.count(CaptureEventRow.id)).where(
                    CaptureEventRow.kind == kind.value,
                    CaptureEventRow.affiliate_id == affiliate_id,
                )
            return (await session.execute(stmt)).scalar_one()

    async def affiliate_stats(self, affiliate_id: str) -> dict:
        """Counters per aggregate kind plus click status breakdown."""
        async with self._read() as session:
            aggregates = (await session.execute(
                select(AttributionAggregateRow).where(AttributionAggregateRow.affiliate_id == affiliate_id)
            )).scalars().all()
            by_status = dict((await session.execute(
                select(ClickRow.status, func.count(ClickRow.click_id))
                .where(ClickRow.affiliate_id == affiliate_id)
                .group_by(ClickRow.status)
            )).all())
            with_clickref = (await session.execute(
                select(func.count(ClickRow.click_id))
                .where(ClickRow.affiliate_id == affiliate_id, ClickRow.clickref.is_not(None))
            )).scalar_one()

        return {
            "affiliate_id": affiliate_id,
            "aggregates": {
                row.kind: {
                    "total": row.total,
                    "first_at": row.first_at.isoformat() if row.first_at else None,
                    "last_at": row.last_at.isoformat() if row.last_at else None,
                }
                for row in aggregates
            },
            "clicks": {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "with_clickref": with_clickref,
            },
        }

    # ── Click records ────────────────────────────────────────────────────────

    @staticmethod
    def _click_values(
        click_id: str,
        affiliate_id: str,
        *,
        status: ClickStatus,
        campaign_id: str | None = None,
        publisher_id: str | None = None,
        advertiser_id: str | None = None,
        source: str | None = None,
        preview_url: str | None = None,
        query_params: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        click_count: int = 0,
        now: datetime,
    ) -> dict:
        if not click_id:
            raise ValueError("click_id is required")
        if not affiliate_id:
            raise ValueError("affiliate_id is required")
        return {
            "click_id": click_id,
            "affiliate_id": affiliate_id,
            "campaign_id": campaign_id,
            "publisher_id": publisher_id,
            "advertiser_id": advertiser_id,
            "source": source,
            "preview_url": preview_url,
            "status": status.value,
            "query_params": dict(query_params or {}),
            "ip_address": ip_address,
            "user_agent": _clip(user_agent, 500),
            "click_count": click_count,
            "created_at": now,
            "updated_at": now,
        }

    async def create_click(self, click_id: str, affiliate_id: str, **fields) -> bool:
        """Insert a ClickRecord. Returns False if the click id already exists (it is never overwritten)."""
        fields.setdefault("status", ClickStatus.GENERATED)
        values = self._click_values(click_id, affiliate_id, now=utcnow(), **fields)
        async with self._transaction() as session:
            result = await session.execute(self._insert_ignore(session, ClickRow).values(**values))
            created = result.rowcount > 0
        if not created:
            logger.info("Click %s already exists; left untouched", click_id)
        return created

    async def get_click(self, click_id: str) -> Optional[ClickRow]:
        async with self._read() as session:
            return await session.get(ClickRow, click_id)

    async def advance_status(self, click_id: str, status: ClickStatus, **values) -> bool:
        """Move a click forward in its lifecycle. Never regresses; returns whether it moved."""
        now = utcnow()
        async with self._transaction() as session:
            result = await session.execute(
                update(ClickRow)
                .where(ClickRow.click_id == click_id, ClickRow.status.in_([s.value for s in status.earlier()]))
                .values(status=status.value, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def mark_clicked(
        self,
        click_id: str,
        ip_address: str,
        user_agent: str | None,
        click_domain: str | None = None,
    ) -> bool:
        """Record a physical click. The first one moves the status to clicked; later ones only count."""
        now = utcnow()
        async with self._transaction() as session:
            result = await session.execute(
                update(ClickRow)
                .where(
                    ClickRow.click_id == click_id,
                    ClickRow.status.in_([s.value for s in ClickStatus.CLICKED.earlier()]),
                )
                .values(
                    status=ClickStatus.CLICKED.value,
                    ip_address=ip_address,
                    user_agent=_clip(user_agent, 500),
                    click_domain=click_domain,
                    clicked_at=now,
                    click_count=ClickRow.click_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            transitioned = result.rowcount > 0
            if not transitioned:
                await session.execute(
                    update(ClickRow)
                    .where(ClickRow.click_id == click_id)
                    .values(click_count=ClickRow.click_count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        return transitioned

    async def reconcile_client_capture(self, click_id: str, final_url: str, clickref: str | None) -> bool:
        """Attach the browser-observed final URL (and clickref) to the click record."""
        now = utcnow()
        values = {"final_url": final_url, "client_verified_at": now, "updated_at": now}
        if clickref:
            values["clickref"] = clickref[:500]
        async with self._transaction() as session:
            result = await session.execute(
                update(ClickRow)
                .where(ClickRow.click_id == click_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # ── User sessions ────────────────────────────────────────────────────────

    async def find_session(self, browser_session_id: str) -> Optional[UserSessionRow]:
        async with self._read() as session:
            return await session.get(UserSessionRow, browser_session_id)

    async def find_recent_session(
        self,
        affiliate_id: str,
        ip_address: str,
        campaign_id: str | None,
        since: datetime | None,
    ) -> Optional[UserSessionRow]:
        """Most recent session for this affiliate, IP and campaign, optionally bounded by `since`."""
        campaign_match = (
            UserSessionRow.campaign_id.is_(None) if campaign_id is None
            else UserSessionRow.campaign_id == campaign_id
        )
        stmt = select(UserSessionRow).where(
            UserSessionRow.affiliate_id == affiliate_id,
            UserSessionRow.ip_address == ip_address,
            campaign_match,
        )
        if since is not None:
            stmt = stmt.where(UserSessionRow.created_at >= since)
        stmt = stmt.order_by(UserSessionRow.created_at.desc()).limit(1)
        async with self._read() as session:
            return (await session.execute(stmt)).scalars().first()

    async def record_session(
        self,
        browser_session_id: str,
        affiliate_id: str,
        campaign_id: str | None,
        ip_address: str,
        click_id: str,
        kind: ClickKind,
        new_click: dict | None = None,
    ) -> bool:
        """Insert a user session (and, for a first click, its ClickRecord) atomically.

        Returns False when the browser session was already recorded; nothing is
        written in that case.
        """
        now = utcnow()
        async with self._transaction() as session:
            result = await session.execute(
                self._insert_ignore(session, UserSessionRow).values(
                    browser_session_id=browser_session_id,
                    affiliate_id=affiliate_id,
                    campaign_id=campaign_id,
                    ip_address=ip_address,
                    click_id=click_id,
                    click_kind=kind.value,
                    created_at=now,
                )
            )
            if result.rowcount == 0:
                return False
            if new_click is not None:
                fields = dict(new_click)
                fields.setdefault("status", ClickStatus.GENERATED)
                values = self._click_values(click_id, affiliate_id, now=now, click_count=1, **fields)
                await session.execute(self._insert_ignore(session, ClickRow).values(**values))
            else:
                await session.execute(
                    update(ClickRow)
                    .where(ClickRow.click_id == click_id)
                    .values(click_count=ClickRow.click_count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        return True
