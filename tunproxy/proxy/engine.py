"""
Proxy Engine - Target Request Forwarding
========================================

Turns an authenticated inbound request into an outbound call to the target
named by the ``url`` query parameter and streams the answer back.

Flow:
-----
1. Parse and validate the target URL (400 on failure, no outbound call)
2. Transform request headers (see headers.py)
3. Dispatch through the shared httpx.AsyncClient with redirects disabled,
   relaying the inbound body as it arrives
4. Transform the status line and headers of the target's response
5. Stream the response body back chunk by chunk

Failures while talking to the target (connect, TLS, timeout, protocol) are
reported as UpstreamError (502) and never retried.
"""

import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ..config import Settings
from ..errors import TargetValidationError, UpstreamError
from ..models import ProxyRequest, ProxyResponse, ResponseHead
from .headers import build_outbound_headers, cors_headers, transform_response_head

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


# ============================================================================
# Outbound Client
# ============================================================================

def build_upstream_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the connection-pooled client shared by all requests.

    Redirects are never followed: 3xx responses must reach the engine so they
    can be masked. The client sends no default headers of its own.

    Args:
        settings: Proxy settings (UPSTREAM_* and INSECURE_SKIP_VERIFY)
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        Configured httpx.AsyncClient
    """
    timeout = httpx.Timeout(
        connect=settings.UPSTREAM_CONNECT_TIMEOUT,
        read=settings.UPSTREAM_READ_TIMEOUT,
        write=settings.UPSTREAM_WRITE_TIMEOUT,
        pool=settings.UPSTREAM_POOL_TIMEOUT,
    )
    limits = httpx.Limits(
        max_connections=settings.UPSTREAM_MAX_CONNECTIONS,
        max_keepalive_connections=settings.UPSTREAM_MAX_KEEPALIVE,
    )

    client = httpx.AsyncClient(
        proxy=settings.UPSTREAM_PROXY,
        verify=not settings.INSECURE_SKIP_VERIFY,
        follow_redirects=False,
        timeout=timeout,
        limits=limits,
        transport=transport,
        trust_env=False,
    )

    # Drop httpx's implicit Accept / Accept-Encoding / Connection / User-Agent
    for name in list(client.headers.keys()):
        del client.headers[name]

    return client


# ============================================================================
# Request Side
# ============================================================================

def parse_target_url(raw: Optional[str]) -> str:
    """
    Validate the ``url`` query parameter.

    Args:
        raw: Query parameter value, or None when absent

    Returns:
        The URL unchanged

    Raises:
        TargetValidationError: If missing or not an absolute http(s) URL
    """
    if raw is None or not raw.strip():
        raise TargetValidationError("bad request: missing url parameter")

    try:
        parts = urlsplit(raw)
        hostname, _port = parts.hostname, parts.port
    except ValueError:
        raise TargetValidationError()

    if parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
        raise TargetValidationError()

    return raw


def has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def build_proxy_request(request: Request) -> ProxyRequest:
    """
    Extract everything needed for the outbound call from the inbound request.

    The body is not read here; it stays an async iterator over the inbound
    connection.

    Raises:
        TargetValidationError: If the url parameter is missing or malformed
    """
    target_url = parse_target_url(request.query_params.get("url"))

    inbound = [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in request.headers.raw
    ]

    return ProxyRequest(
        url=target_url,
        method=request.method,
        headers=build_outbound_headers(inbound),
        body=request.stream() if has_body(request) else None,
    )


async def send_upstream(client: httpx.AsyncClient, proxy_req: ProxyRequest) -> httpx.Response:
    """
    Send the request and return as soon as the status line and headers arrive.

    The returned response is open: the caller must close it.

    Raises:
        TargetValidationError: If httpx rejects the URL
        UpstreamError: On any transport-level failure
        ClientDisconnect: If the caller went away while uploading the body
    """
    try:
        outbound = client.build_request(
            proxy_req.method,
            proxy_req.url,
            headers=[(k.encode("latin-1"), v.encode("latin-1")) for k, v in proxy_req.headers],
            content=proxy_req.body,
        )
    except httpx.InvalidURL:
        raise TargetValidationError()

    try:
        return await client.send(outbound, stream=True)
    except httpx.TimeoutException as e:
        logger.warning(
            "Upstream timeout",
            extra={"target": proxy_req.url, "error": type(e).__name__}
        )
        raise UpstreamError(f"upstream timeout: {type(e).__name__}")
    except httpx.TransportError as e:
        logger.warning(
            "Upstream unreachable",
            extra={"target": proxy_req.url, "error": type(e).__name__}
        )
        raise UpstreamError(f"upstream unreachable: {type(e).__name__}")


# ============================================================================
# Response Side
# ============================================================================

async def relay_body(upstream: httpx.Response, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
    """
    Yield the target's body as it arrives, still content-encoded.

    At most one chunk is held at a time. A failure mid-stream is logged and
    re-raised so the server aborts the caller's connection instead of
    ending the body cleanly.
    """
    try:
        async for chunk in upstream.aiter_raw(chunk_size):
            yield chunk
    except httpx.HTTPError as e:
        logger.warning(
            "Upstream body relay interrupted",
            extra={"target": str(upstream.request.url), "error": type(e).__name__}
        )
        raise
    finally:
        await upstream.aclose()


def to_proxy_response(
    upstream: httpx.Response,
    settings: Settings,
    request_headers,
    target_url: str,
) -> ProxyResponse:
    # Raw bytes round-trip through latin-1 whatever the target sent
    raw = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in upstream.headers.raw]
    head = ResponseHead(upstream.status_code, raw)
    head = transform_response_head(
        head,
        cors_headers(settings, request_headers),
        target_url=target_url,
        proxy_path=settings.PROXY_PATH,
    )
    return ProxyResponse(head.status_code, head.headers, body=relay_body(upstream))


def streaming_response(proxy_response: ProxyResponse, background: Optional[BackgroundTask] = None) -> StreamingResponse:
    """
    Wrap a ProxyResponse for Starlette without losing duplicate headers.

    Starlette builds raw headers from a mapping, which would collapse
    repeated names, so the raw list is set directly.
    """
    response = StreamingResponse(
        proxy_response.body,
        status_code=proxy_response.status_code,
        background=background,
    )
    response.raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in proxy_response.headers
    ]
    return response


async def proxy_request(
    request: Request,
    client: httpx.AsyncClient,
    settings: Settings,
) -> StreamingResponse:
    """
    Forward an authenticated request to its target and stream the reply.

    Args:
        request: Inbound request (already authenticated)
        client: Shared outbound client
        settings: Proxy settings

    Returns:
        StreamingResponse relaying the transformed target response

    Raises:
        TargetValidationError: Missing or malformed url parameter
        UpstreamError: The target could not be reached
        ClientDisconnect: The caller disconnected while uploading
    """
    proxy_req = build_proxy_request(request)

    logger.info(
        "Proxying request",
        extra={"method": proxy_req.method, "target": proxy_req.url}
    )

    upstream = await send_upstream(client, proxy_req)

    proxy_response = to_proxy_response(upstream, settings, request.headers, proxy_req.url)

    if proxy_response.status_code != upstream.status_code:
        logger.info(
            "Masked upstream redirect",
            extra={"target": proxy_req.url, "status_code": upstream.status_code}
        )

    # aclose is idempotent; the background task covers a caller that
    # disconnects before the body iterator is first advanced.
    return streaming_response(proxy_response, background=BackgroundTask(upstream.aclose))
