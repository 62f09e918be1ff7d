"""
Redirect chain follower.

Affiliate links rarely point straight at the merchant. A click usually bounces
through the network's tracker, a sub-network, sometimes a meta-refresh
interstitial, and only then lands. To attribute the click we need every hop:

  HEAD (no auto-redirect) →
    3xx + Location            → next hop
    no Location               → GET the same URL
      3xx + Location          → next hop
      200 text/html           → <meta http-equiv="refresh"> target → next hop
      nothing found           → chain complete

Failures never escape: a hop that can't be fetched is recorded with its error
and the chain stops there, so callers always get a best-effort chain.
"""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from config.settings import settings
from clicktrail.models.tracking import ChainResult, Hop, RedirectType
from clicktrail.services.urls import (
    base_url,
    extract_meta_refresh,
    extract_params,
    has_js_redirect,
    is_http_url,
    resolve,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Only the start of an interstitial page is scanned for meta refresh / JS redirects
MAX_SCAN_BYTES = 256 * 1024

_FETCH_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


def _is_redirect(status: int) -> bool:
    return 300 <= status < 400


class RedirectFollower:
    """Follows a redirect chain hop by hop with a bounded number of hops."""

    def __init__(
        self,
        max_hops: int | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_hops = settings.MAX_HOPS if max_hops is None else max_hops
        self.timeout = settings.HOP_TIMEOUT_SECONDS if timeout is None else timeout
        self.user_agent = user_agent or settings.FOLLOWER_USER_AGENT
        self.retries = settings.HOP_RETRIES if retries is None else retries
        self._transport = transport
        if self.max_hops < 1:
            raise ValueError("max_hops must be at least 1")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout,
            follow_redirects=False,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
        )

    async def follow(self, start_url: str) -> ChainResult:
        """Walk the chain from start_url. Never raises for network failures."""
        if not is_http_url(start_url):
            hop = Hop(step=0, url=start_url, base_url=base_url(start_url), error="Invalid start URL")
            return ChainResult(start_url=start_url, hops=[hop], completed=False)

        hops: list[Hop] = []
        visited = {start_url}
        current = start_url
        needs_client_capture = False

        async with self._client() as client:
            while len(hops) < self.max_hops:
                hop, next_url = await self._probe(client, len(hops), current)
                hops.append(hop)

                if hop.error:
                    logger.info("Chain from %s stopped at step %d: %s", start_url, hop.step, hop.error)
                    return ChainResult(start_url, hops, completed=False,
                                       needs_client_capture=needs_client_capture)

                if hop.redirect_type == RedirectType.JS:
                    needs_client_capture = True

                # No redirect, a no-op redirect, a loop, or a non-web target: the chain ends here
                if not next_url or next_url == current or next_url in visited or not is_http_url(next_url):
                    logger.debug("Chain from %s complete after %d hops", start_url, len(hops))
                    return ChainResult(start_url, hops, completed=True,
                                       needs_client_capture=needs_client_capture)

                visited.add(next_url)
                current = next_url

        logger.warning("Hop ceiling (%d) reached for %s", self.max_hops, start_url)
        return ChainResult(start_url, hops, completed=False, needs_client_capture=needs_client_capture)

    async def _probe(self, client: httpx.AsyncClient, step: int, url: str) -> tuple[Hop, Optional[str]]:
        """Fetch one URL and work out where it points next."""
        started = time.perf_counter()
        method = "HEAD"
        next_url: Optional[str] = None
        redirect_type: Optional[RedirectType] = None
        try:
            response = await self._retrying(lambda: client.head(url))
            location = response.headers.get("location")

            if _is_redirect(response.status_code) and location:
                next_url = resolve(location, url)
                redirect_type = RedirectType.HTTP if next_url else None
            else:
                method = "GET"
                response, body = await self._retrying(lambda: self._get(client, url))
                location = response.headers.get("location")
                if _is_redirect(response.status_code) and location:
                    next_url = resolve(location, url)
                    redirect_type = RedirectType.HTTP if next_url else None
                elif body:
                    next_url = extract_meta_refresh(body, url)
                    if next_url:
                        redirect_type = RedirectType.META_REFRESH
                    elif has_js_redirect(body):
                        redirect_type = RedirectType.JS
        except _FETCH_ERRORS as e:
            return Hop(
                step=step,
                url=url,
                base_url=base_url(url),
                parameters=extract_params(url),
                method=method,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(e) or e.__class__.__name__,
            ), None

        hop = Hop(
            step=step,
            url=url,
            base_url=base_url(url),
            parameters=extract_params(url),
            status=response.status_code,
            method=method,
            redirect_type=redirect_type,
            headers=dict(response.headers),
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.debug("Hop %d %s %s -> %s", step, response.status_code, url, next_url)
        return hop, next_url

    async def _get(self, client: httpx.AsyncClient, url: str) -> tuple[httpx.Response, str]:
        """GET without auto-redirects. Only a 200 HTML body is read, and only its head."""
        async with client.stream("GET", url) as response:
            content_type = response.headers.get("content-type", "")
            if response.status_code != 200 or "text/html" not in content_type:
                return response, ""
            chunks = bytearray()
            async for chunk in response.aiter_bytes():
                chunks.extend(chunk)
                if len(chunks) >= MAX_SCAN_BYTES:
                    break
            return response, bytes(chunks).decode(response.encoding or "utf-8", errors="replace")

    async def _retrying(self, call: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.retries + 1):
            try:
                return await call()
            except _FETCH_ERRORS:
                if attempt >= self.retries:
                    raise
                logger.debug("Hop fetch failed, retrying (%d/%d)", attempt + 1, self.retries)
        raise AssertionError("unreachable")
