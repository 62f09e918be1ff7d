"""Client-side capture bridge.

Some affiliate networks only append their attribution token (clickref) in the
browser, after JS redirects the server can never observe. The capture script
runs on the landing page, waits for that JS to settle, reads the real URL and
reports it back. The settle delay is a heuristic, not a readiness signal.

Also renders the HTML bridge page served by chain tracking: an immediate
script redirect plus a 1x1 confirmation pixel.
"""
from __future__ import annotations

import base64
import html
import json
from typing import Optional

from config.settings import settings

CAPTURE_PATH = "/api/capture-final"

# 1x1 transparent GIF served by the tracking pixel
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def _js(value) -> str:
    """JSON literal safe to inline inside a <script> block."""
    return json.dumps(value).replace("</", "<\\/").replace("<!--", "<\\!--")


def render_capture_script(
    affiliate_id: str,
    click_id: str,
    *,
    campaign_id: Optional[str] = None,
    publisher_id: Optional[str] = None,
    base_url: str = "",
    settle_ms: Optional[int] = None,
    param: Optional[str] = None,
) -> str:
    """Browser script that reports the settled landing URL. Fire-and-forget: never touches the page."""
    config = {
        "endpoint": f"{base_url.rstrip('/')}{CAPTURE_PATH}",
        "param": param or settings.CAPTURE_PARAM,
        "settleMs": settings.CAPTURE_SETTLE_MS if settle_ms is None else settle_ms,
        "affiliateId": affiliate_id,
        "clickId": click_id,
        "campaignId": campaign_id or "",
        "publisherId": publisher_id or "",
    }
    return f"""(function () {{
  var cfg = {_js(config)};
  setTimeout(function () {{
    try {{
      var finalUrl = window.location.href;
      var parameters = {{}};
      new URL(finalUrl).searchParams.forEach(function (value, key) {{ parameters[key] = value; }});
      if (!parameters[cfg.param]) return;
      fetch(cfg.endpoint, {{
        method: "POST",
        keepalive: true,
        headers: {{ "Content-Type": "application/json" }},
        body: JSON.stringify({{
          affiliateId: cfg.affiliateId,
          clickId: cfg.clickId,
          campaignId: cfg.campaignId,
          publisherId: cfg.publisherId,
          finalUrl: finalUrl,
          parameters: parameters,
          userAgent: navigator.userAgent,
          referrer: document.referrer,
          timestamp: new Date().toISOString()
        }})
      }}).catch(function () {{}});
    }} catch (e) {{}}
  }}, cfg.settleMs);
}})();
"""


def render_bridge_page(final_url: str, pixel_url: Optional[str] = None) -> str:
    """Minimal page: fire the pixel, then replace the location with the final URL."""
    href = html.escape(final_url, quote=True)
    pixel = (
        f'<img src="{html.escape(pixel_url, quote=True)}" width="1" height="1" alt="" '
        f'style="position:absolute;left:-9999px">'
        if pixel_url else ""
    )
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="robots" content="noindex,nofollow">
    <title>Redirecting...</title>
</head>
<body>
    {pixel}
    <script>
        window.location.replace({_js(final_url)});
    </script>
    <noscript>
        <meta http-equiv="refresh" content="0;url={href}">
        <p>Redirecting to <a href="{href}">destination</a>...</p>
    </noscript>
</body>
</html>
"""
