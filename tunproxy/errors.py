"""
Error taxonomy for proxied requests.

Every per-request failure is a ProxyError carrying the HTTP status it is
answered with and a short diagnostic that is safe to show to the caller.
Precedence, from most to least dominant:

    AuthError (401) > TargetValidationError (400) > UpstreamError (502)

A caller disconnecting early is not an error: in-flight work is abandoned
and nothing is surfaced.
"""

from fastapi import status


class ProxyError(Exception):
    """Base class for failures that terminate a single proxied request."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "proxy error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class AuthError(ProxyError):
    """Missing or wrong bearer credential."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "unauthorized: bearer authentication failed"


class TargetValidationError(ProxyError):
    """The url query parameter is missing or not an absolute http(s) URL."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "bad request: invalid url parameter"


class UpstreamError(ProxyError):
    """
    The target could not be reached or answered with something unparseable.

    Covers connect failures, TLS failures, timeouts and protocol errors.
    Never retried.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "upstream unreachable"
