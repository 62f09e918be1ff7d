"""Shared test fixtures — a fresh SQLite file DB per test, fake upstream redirect targets."""
from __future__ import annotations

from typing import Callable

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import clicktrail.db.engine as _engine_mod
from clicktrail.api.deps import get_follower
from clicktrail.api.main import app
from clicktrail.db.tables import Base
from clicktrail.services import background
from clicktrail.services.recorder import AttributionRecorder
from clicktrail.services.redirect_follower import RedirectFollower


class Upstream:
    """Fake redirect targets keyed by full URL, served through httpx.MockTransport."""

    def __init__(self):
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def redirect(self, url: str, location: str, status: int = 302) -> None:
        self.routes[url] = lambda request: httpx.Response(status, headers={"Location": location})

    def page(self, url: str, body: str = "<html><body>ok</body></html>") -> None:
        self.routes[url] = lambda request: httpx.Response(200, html=body)

    def fail(self, url: str, message: str = "Connection refused") -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(message, request=request)
        self.routes[url] = _raise

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def follower(self, **kwargs) -> RedirectFollower:
        return RedirectFollower(transport=self.transport(), **kwargs)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    """File-backed DB so concurrent sessions each get their own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    monkeypatch.setattr(_engine_mod, "engine", engine)
    monkeypatch.setattr(_engine_mod, "async_session", factory)
    yield factory

    await background.drain()
    await engine.dispose()


@pytest.fixture
def recorder(session_factory) -> AttributionRecorder:
    return AttributionRecorder(session_factory)


@pytest_asyncio.fixture
async def client(session_factory, upstream):
    """API client with upstream redirect targets served by the Upstream fake."""
    app.dependency_overrides[get_follower] = lambda: upstream.follower()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_follower, None)
