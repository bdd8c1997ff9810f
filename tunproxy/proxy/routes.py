"""
Proxy Routes - The Single Tunnel Endpoint
=========================================

This module implements the one public endpoint of the service:

    <any method> /proxy?url=<absolute-url>

Security Model:
---------------
1. OPTIONS preflights are answered locally with CORS headers, no target call
2. Every other request must carry "Authorization: Bearer <TUNPROXY_TOKEN>"
3. The Authorization header itself is never forwarded to the target
4. Only whitelisted and tun- prefixed headers reach the target

The route is registered for every HTTP method, including extension methods
such as PROPFIND, so it is a raw ASGI endpoint rather than a FastAPI path
operation.
"""

import logging

import httpx
from fastapi import FastAPI, HTTPException, Request, Response, status
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from ..auth import require_bearer
from ..config import Settings
from .engine import proxy_request
from .headers import NO_CACHE_HEADERS, cors_headers

logger = logging.getLogger(__name__)

# nginx's "client closed request"; never actually seen by the caller
CLIENT_CLOSED_REQUEST = 499


# ============================================================================
# Shared State Accessors
# ============================================================================

def get_proxy_settings(request: Request) -> Settings:
    """
    Return the immutable settings the application was created with.

    Raises:
        HTTPException: If the application was not started through create_app
    """
    app_state = getattr(request.app.state, "app_state", None)
    if app_state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Proxy settings not initialized"
        )
    return app_state.settings


def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Return the shared outbound client created in the lifespan handler.

    Raises:
        HTTPException: If the lifespan has not run (or already shut down)
    """
    app_state = getattr(request.app.state, "app_state", None)
    client = app_state.upstream_client if app_state is not None else None
    if client is None or client.is_closed:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not available"
        )
    return client


# ============================================================================
# Endpoint
# ============================================================================

def preflight_response(request: Request, settings: Settings) -> Response:
    """Answer a CORS preflight without contacting the target."""
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    for name, value in cors_headers(settings, request.headers) + NO_CACHE_HEADERS:
        response.headers.append(name, value)
    return response


async def handle_proxy(request: Request) -> Response:
    """
    Authenticate, then forward the request to the target named by ``url``.

    Flow:
    1. OPTIONS -> 204 with CORS headers
    2. Bearer check (AuthError -> 401, nothing sent upstream)
    3. Target URL validation (TargetValidationError -> 400)
    4. Dispatch and stream (UpstreamError -> 502)

    Errors are raised as ProxyError subclasses and rendered by the
    application's exception handler.
    """
    settings = get_proxy_settings(request)

    if request.method == "OPTIONS":
        return preflight_response(request, settings)

    require_bearer(request, settings.TUNPROXY_TOKEN)

    client = get_upstream_client(request)

    try:
        return await proxy_request(request, client, settings)
    except ClientDisconnect:
        logger.debug(
            "Client disconnected before the request body was relayed",
            extra={"path": request.url.path, "method": request.method}
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)


class ProxyEndpoint:
    """
    ASGI wrapper around handle_proxy.

    Starlette limits a function endpoint registered without ``methods`` to
    GET and HEAD; an ASGI class endpoint is matched for every method.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive=receive, send=send)
        response = await handle_proxy(request)
        await response(scope, receive, send)


def register_proxy_route(app: FastAPI, settings: Settings) -> None:
    """Mount the proxy endpoint for every HTTP method at PROXY_PATH."""
    app.add_route(settings.PROXY_PATH, ProxyEndpoint(), include_in_schema=False)
