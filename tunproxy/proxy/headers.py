"""
Header Transformers
===================

Pure functions that decide which headers cross the proxy in each direction.

Request direction (client -> target):
-------------------------------------
1. A fixed whitelist of headers is copied verbatim.
2. Headers prefixed with ``tun-`` are copied with the prefix removed once.
3. Everything else (including the proxy's own Authorization) is dropped.

When a whitelisted header is also sent ``tun-`` prefixed, the prefixed
instances win and the plain ones are dropped. Host is never copied: the
outbound client derives it from the target URL.

Response direction (target -> client):
--------------------------------------
- Redirect masking: a 3xx with a Location becomes a 200 carrying
  ``tun-status``, ``tun-location`` and ``tun-location-proxy``.
- Cookie masking: every Set-Cookie is renamed to ``tun-Set-Cookie``.
- CORS injection: the proxy's own Access-Control-* headers replace the
  target's.

No function here performs I/O or touches a body.
"""

from typing import Iterable, Optional, Set, Tuple
from urllib.parse import quote, urljoin

from ..config import Settings
from ..models import HeaderList, HeaderRule, RedirectEnvelope, ResponseHead

TUN_PREFIX = "tun-"

# Forwarded without the tun- prefix (lower-cased for lookup)
FORWARD_WHITELIST = frozenset({
    "content-type",
    "content-length",
    "user-agent",
    "accept",
    "accept-encoding",
    "keep-alive",
})

# Never sent to the target even when explicitly tun- prefixed
OUTBOUND_RESERVED = frozenset({"host", "transfer-encoding"})

# Framing headers owned by the server that relays the body
RESPONSE_HOP_BY_HOP = frozenset({"transfer-encoding", "connection"})

TUN_STATUS = "tun-status"
TUN_LOCATION = "tun-location"
TUN_LOCATION_PROXY = "tun-location-proxy"
TUN_SET_COOKIE = "tun-Set-Cookie"

EXPOSED_HEADERS = ", ".join([TUN_LOCATION, TUN_LOCATION_PROXY, TUN_SET_COOKIE, TUN_STATUS])

NO_CACHE_HEADERS: HeaderList = [
    ("Cache-Control", "no-store, no-cache, must-revalidate, post-check=0, pre-check=0"),
    ("Pragma", "no-cache"),
    ("Expires", "0"),
]


# ============================================================================
# Request Headers
# ============================================================================

def classify_header(name: str) -> HeaderRule:
    """Classify an inbound header name. A bare ``tun-`` is dropped."""
    lowered = name.lower()
    if lowered in FORWARD_WHITELIST:
        return HeaderRule.WHITELISTED
    if lowered.startswith(TUN_PREFIX) and len(lowered) > len(TUN_PREFIX):
        return HeaderRule.TUN_PREFIXED
    return HeaderRule.DROPPED


def strip_tun_prefix(name: str) -> str:
    """Remove exactly one leading ``tun-`` (any case) from a header name."""
    if name[:len(TUN_PREFIX)].lower() == TUN_PREFIX:
        return name[len(TUN_PREFIX):]
    return name


def build_outbound_headers(inbound: Iterable[Tuple[str, str]]) -> HeaderList:
    """
    Map inbound request headers to the headers sent to the target.

    Args:
        inbound: Inbound (name, value) pairs, duplicates allowed

    Returns:
        Outbound (name, value) pairs in inbound order

    Example:
        >>> build_outbound_headers([("tun-X-Token", "a"), ("Cookie", "b")])
        [('X-Token', 'a')]
    """
    inbound = list(inbound)

    # Whitelisted names that are also sent tun- prefixed; the prefixed copy wins
    overridden: Set[str] = set()
    for name, _ in inbound:
        if classify_header(name) is HeaderRule.TUN_PREFIXED:
            stripped = strip_tun_prefix(name).lower()
            if stripped in FORWARD_WHITELIST:
                overridden.add(stripped)

    outbound: HeaderList = []
    for name, value in inbound:
        rule = classify_header(name)

        if rule is HeaderRule.WHITELISTED:
            if name.lower() in overridden:
                continue
            outbound.append((name, value))

        elif rule is HeaderRule.TUN_PREFIXED:
            stripped = strip_tun_prefix(name)
            if stripped.lower() in OUTBOUND_RESERVED:
                continue
            outbound.append((stripped, value))

    return outbound


# ============================================================================
# Response Headers
# ============================================================================

def build_proxy_url(location: str, proxy_path: str = "/proxy") -> str:
    """Return this service's own URL for fetching ``location`` through it."""
    return f"{proxy_path}?url={quote(location, safe='')}"


def resolve_location(location: str, target_url: Optional[str]) -> str:
    """
    Make a Location value absolute relative to the URL that produced it.

    Absolute http(s) URLs are returned untouched.
    """
    lowered = location.lower()
    if lowered.startswith("http://") or lowered.startswith("https://") or not target_url:
        return location
    return urljoin(target_url, location)


def redirect_envelope(
    status_code: int,
    headers: HeaderList,
    target_url: Optional[str] = None,
    proxy_path: str = "/proxy",
) -> Optional[RedirectEnvelope]:
    """
    Describe a response that must be delivered as a masked redirect.

    Returns:
        RedirectEnvelope for a 3xx response carrying a non-empty Location, else None
    """
    if not 300 <= status_code <= 399:
        return None

    location = ResponseHead(status_code, headers).get("location")
    if location is None or not location.strip():
        return None

    absolute = resolve_location(location.strip(), target_url)
    return RedirectEnvelope(
        status=status_code,
        location=location,
        proxy_location=build_proxy_url(absolute, proxy_path),
    )


def mask_redirect(
    head: ResponseHead,
    target_url: Optional[str] = None,
    proxy_path: str = "/proxy",
) -> ResponseHead:
    """
    Replace a 3xx + Location with a 200 carrying the redirect as metadata.

    Responses that are not redirects, or redirects without a usable
    Location (e.g. 304, or an empty value), are returned unchanged.
    """
    envelope = redirect_envelope(head.status_code, head.headers, target_url, proxy_path)
    if envelope is None:
        return head

    headers = [(k, v) for k, v in head.headers if k.lower() != "location"]
    headers.extend([
        (TUN_STATUS, str(envelope.status)),
        (TUN_LOCATION, envelope.location),
        (TUN_LOCATION_PROXY, envelope.proxy_location),
    ])
    return ResponseHead(200, headers)


def mask_cookies(head: ResponseHead) -> ResponseHead:
    """Rename every Set-Cookie to tun-Set-Cookie, keeping values and order."""
    headers = [
        (TUN_SET_COOKIE if k.lower() == "set-cookie" else k, v)
        for k, v in head.headers
    ]
    return ResponseHead(head.status_code, headers)


def cors_headers(settings: Settings, request_headers) -> HeaderList:
    """
    CORS headers attached to every response.

    Args:
        settings: Proxy settings (CORS_* values)
        request_headers: Inbound request headers (case-insensitive mapping)

    Returns:
        (name, value) pairs to append to the response
    """
    origin = request_headers.get("origin") or "*"

    allow_headers = settings.CORS_ALLOW_HEADERS
    if allow_headers is None:
        allow_headers = request_headers.get("access-control-request-headers") or "*"

    headers: HeaderList = [
        ("Access-Control-Allow-Origin", origin),
        ("Access-Control-Allow-Methods", settings.CORS_ALLOW_METHODS),
        ("Access-Control-Allow-Headers", allow_headers),
        ("Access-Control-Max-Age", str(settings.CORS_MAX_AGE)),
        ("Access-Control-Expose-Headers", EXPOSED_HEADERS),
    ]
    if settings.CORS_ALLOW_CREDENTIALS:
        headers.append(("Access-Control-Allow-Credentials", "true"))
    if origin != "*":
        headers.append(("Vary", "Origin"))
    return headers


def inject_cors(head: ResponseHead, cors: HeaderList) -> ResponseHead:
    """Drop the target's Access-Control-* headers and append the proxy's own."""
    headers = [(k, v) for k, v in head.headers if not k.lower().startswith("access-control-")]
    headers.extend(cors)
    return ResponseHead(head.status_code, headers)


def strip_hop_by_hop(head: ResponseHead) -> ResponseHead:
    headers = [(k, v) for k, v in head.headers if k.lower() not in RESPONSE_HOP_BY_HOP]
    return ResponseHead(head.status_code, headers)


def transform_response_head(
    head: ResponseHead,
    cors: HeaderList,
    target_url: Optional[str] = None,
    proxy_path: str = "/proxy",
) -> ResponseHead:
    """
    Apply every response rule to the target's status line and headers.

    Args:
        head: Status and headers as received from the target
        cors: Output of cors_headers() for the current request
        target_url: URL the response came from (resolves relative Locations)
        proxy_path: Path of the proxy endpoint used in tun-location-proxy

    Returns:
        Status and headers to send to the caller
    """
    head = strip_hop_by_hop(head)
    head = mask_redirect(head, target_url, proxy_path)
    head = mask_cookies(head)
    return inject_cors(head, cors)
