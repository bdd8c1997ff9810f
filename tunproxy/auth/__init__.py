"""
Authentication Package

This package guards the proxy endpoint with a single shared bearer secret.

Modules:
- bearer: Authorization header parsing and constant-time secret comparison

The authentication flow:
1. Client sends "Authorization: Bearer <token>" with every proxied request
2. The token is compared with the configured TUNPROXY_TOKEN
3. On mismatch the request is answered 401 before any outbound I/O
"""

from .bearer import BEARER_PREFIX, authenticate, require_bearer, valid_bearer

__all__ = [
    "BEARER_PREFIX",
    "authenticate",
    "require_bearer",
    "valid_bearer",
]
