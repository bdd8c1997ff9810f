"""
FastAPI Application Factory
===========================

Entry point of the tunnel proxy that sits between browser clients and
arbitrary HTTP targets.

Architecture:
    Browser → tunproxy (this service) → Target

Routes:
    - <any method> /proxy?url=... : authenticated forwarding endpoint
    - everything else             : 404

Running the Service:
    Development:
        python -m tunproxy --env-file .env

    With uvicorn directly:
        uvicorn --factory tunproxy.main:create_app --host 0.0.0.0 --port 10010

    With custom log level:
        LOG_LEVEL=DEBUG python -m tunproxy
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from . import __version__
from .config import Settings, get_settings
from .errors import AuthError, ProxyError
from .proxy import register_proxy_route
from .proxy.engine import build_upstream_client
from .proxy.headers import NO_CACHE_HEADERS, cors_headers

logger = logging.getLogger(__name__)


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Request lines are already logged by the proxy engine
    logging.getLogger("httpx").setLevel(logging.WARNING)


class AppState:
    """
    Per-application state container.

    Holds the immutable settings and the single outbound connection pool
    shared by every request.
    """
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport
        self.upstream_client: Optional[httpx.AsyncClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Create the pooled outbound client (redirects off, timeouts bounded)

    Shutdown:
        - Close the outbound client and every pooled connection
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings

    app_state.upstream_client = build_upstream_client(settings, app_state.transport)

    logger.info(
        "Tunnel proxy started",
        extra={
            "version": __version__,
            "proxy_path": settings.PROXY_PATH,
            "upstream_proxy": settings.UPSTREAM_PROXY is not None,
            "verify_tls": not settings.INSECURE_SKIP_VERIFY,
        }
    )

    try:
        yield
    finally:
        await app_state.upstream_client.aclose()
        app_state.upstream_client = None
        logger.info("Tunnel proxy shutdown complete")


def error_response(request: Request, settings: Settings, status_code: int, detail: str) -> PlainTextResponse:
    """Short text/plain error with CORS and no-cache headers."""
    response = PlainTextResponse(detail, status_code=status_code)
    for name, value in cors_headers(settings, request.headers) + NO_CACHE_HEADERS:
        response.headers.append(name, value)
    return response


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (default: get_settings())
        transport: Optional outbound transport override, used by tests to
            stand in for the target server

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="tunproxy",
        description="Authenticated forwarding proxy for browser clients",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.app_state = AppState(settings, transport)

    register_proxy_route(app, settings)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> PlainTextResponse:
        response = error_response(request, settings, exc.status_code, exc.detail)
        if isinstance(exc, AuthError):
            response.headers["WWW-Authenticate"] = "Bearer"
        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """
        Log unexpected errors and answer with a generic 500.

        The body never contains exception details.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return error_response(request, settings, 500, "internal server error")

    return app
