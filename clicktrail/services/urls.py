"""URL helpers shared by the redirect follower and the tracking endpoints."""
from __future__ import annotations

import html
import re
from typing import Mapping, Optional
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit, urlunsplit

# Query parameters affiliate networks commonly use to carry the real destination
NESTED_URL_KEYS = (
    "lpurl", "url", "u", "redirect", "redir", "target",
    "dest", "destination", "to", "r",
)

# Checked in order; the first header present wins
CLIENT_IP_HEADERS = (
    "x-client-ip",
    "x-forwarded-for",
    "cf-connecting-ip",
    "fastly-client-ip",
    "true-client-ip",
    "x-real-ip",
    "x-cluster-client-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)

_META_REFRESH_TAG = re.compile(r"<meta[^>]*http-equiv\s*=\s*[\"']?refresh[\"']?[^>]*>", re.IGNORECASE)
_META_REFRESH_URL = re.compile(
    r"content\s*=\s*[\"']?\s*\d+(?:\.\d+)?\s*;\s*url\s*=\s*[\"']?([^\"'>\s]+)",
    re.IGNORECASE,
)
_JS_REDIRECT = re.compile(r"(?:window|document|top|self)\.location(?:\.href)?\s*=|location\.(?:replace|assign)\s*\(")
_SCRIPT_BLOCK = re.compile(r"<script\b[^>]*>(.*?)</script\s*>", re.IGNORECASE | re.DOTALL)
# Callbacks that run without the visitor doing anything
_AUTO_RUN = re.compile(r"setTimeout|setInterval|DOMContentLoaded|\bonload\b|[\"']load[\"']|\(\s*function\s*\(\s*\)\s*$")


def is_http_url(value: str | None) -> bool:
    if not value:
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def extract_params(url: str) -> dict[str, str]:
    """Query parameters as an ordered dict. Repeated keys keep the last value."""
    try:
        query = urlsplit(url).query
    except ValueError:
        return {}
    return dict(parse_qsl(query, keep_blank_values=True))


def base_url(url: str) -> str:
    """Origin + path with the query string and fragment stripped."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return f"{parts.scheme}://{parts.netloc}{parts.path or '/'}"


def resolve(location: str, current_url: str) -> Optional[str]:
    """Resolve a Location / meta-refresh target against the URL that produced it.

    Returns None when the target can't be parsed (e.g. a broken IPv6 host).
    """
    try:
        return urljoin(current_url, location.strip())
    except ValueError:
        return None


def extract_meta_refresh(body: str, current_url: str) -> Optional[str]:
    """Find <meta http-equiv="refresh" content="N;url=..."> and return the absolute target."""
    for tag in _META_REFRESH_TAG.findall(body):
        match = _META_REFRESH_URL.search(tag)
        if match and match.group(1):
            target = unquote(html.unescape(match.group(1)))
            return resolve(target, current_url)
    return None


def _enclosing_block(script: str, pos: int) -> Optional[int]:
    """Index of the `{` that opens the block containing pos, or None at top level."""
    depth = 0
    for i in range(pos - 1, -1, -1):
        c = script[i]
        if c == "}":
            depth += 1
        elif c == "{":
            if depth == 0:
                return i
            depth -= 1
    return None


def has_js_redirect(body: str) -> bool:
    """Heuristic: does the page navigate away on its own once loaded?

    Only <script> blocks count, and only location assignments that run
    unprompted: at the top level of the script, or inside a timer or
    page-load callback. Assignments inside click handlers and other
    functions are ordinary page behaviour and are ignored.
    """
    for script in _SCRIPT_BLOCK.findall(body):
        for match in _JS_REDIRECT.finditer(script):
            opener = _enclosing_block(script, match.start())
            if opener is None or _AUTO_RUN.search(script[max(0, opener - 120):opener]):
                return True
    return False


def decode_nested(value: str | None, depth: int = 3) -> str | None:
    """Undo up to `depth` layers of percent-encoding (double-encoded final URLs are common)."""
    if not value:
        return value
    out = value
    for _ in range(depth):
        decoded = unquote(out)
        if decoded == out:
            break
        out = decoded
    return out


def _coerce(url: str):
    parts = urlsplit(url)
    if not parts.scheme:
        parts = urlsplit(f"https://{url}")
    return parts


def merge_params(url: str, params: Mapping[str, object]) -> str:
    """Append params that the URL doesn't already carry. Existing values are never overwritten."""
    if not url:
        return url
    try:
        parts = _coerce(url)
    except ValueError:
        return url
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    existing = {k for k, _ in pairs}
    for key, value in params.items():
        if not key or value is None or key in existing:
            continue
        pairs.append((key, str(value)))
        existing.add(key)
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def merge_params_nested(url: str, params: Mapping[str, object]) -> str:
    """merge_params on the outer URL and on any nested destination URL it carries."""
    merged = merge_params(url, params)
    try:
        parts = urlsplit(merged)
    except ValueError:
        return merged
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    changed = False
    for i, (key, value) in enumerate(pairs):
        if key not in NESTED_URL_KEYS:
            continue
        nested = decode_nested(value)
        if is_http_url(nested):
            pairs[i] = (key, merge_params(nested, params))
            changed = True
    if not changed:
        return merged
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def set_params(url: str, params: Mapping[str, object]) -> str:
    """Set params on a URL, replacing any existing values for the same keys."""
    parts = _coerce(url)
    overrides = {k: str(v) for k, v in params.items() if k and v is not None}
    pairs = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in overrides]
    pairs.extend(overrides.items())
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str:
    """Best-effort visitor IP from proxy headers, then the socket peer."""
    ip = None
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            ip = value.split(",")[0].strip() if name == "x-forwarded-for" else value.strip()
            break
    ip = ip or fallback or "unknown"
    if ip in ("::1", "127.0.0.1"):
        return "localhost"
    return ip
