"""
Bearer token verification.

The only credential the proxy accepts is the configured secret presented as

    Authorization: Bearer <secret>

The scheme keyword is matched case-sensitively and the secret byte-exactly;
no whitespace is trimmed. Verification is a pure predicate: it never
touches the network and never logs the presented value.
"""

import hmac
import logging
from typing import Optional

from fastapi import Request

from ..errors import AuthError
from ..models import AuthContext

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def valid_bearer(authorization: Optional[str], secret: str) -> bool:
    """
    Check an Authorization header value against the configured secret.

    Args:
        authorization: Raw header value, or None when the header is absent
        secret: Configured bearer secret

    Returns:
        True only for exactly "Bearer " followed by the secret

    Example:
        >>> valid_bearer("Bearer s3cret", "s3cret")
        True
        >>> valid_bearer("bearer s3cret", "s3cret")
        False
    """
    if not authorization or not secret:
        return False

    if not authorization.startswith(BEARER_PREFIX):
        return False

    presented = _wire_bytes(authorization[len(BEARER_PREFIX):])
    return hmac.compare_digest(presented, secret.encode("utf-8"))


def _wire_bytes(value: str) -> bytes:
    # Starlette decodes header bytes as latin-1; undo that to compare raw bytes.
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value.encode("utf-8")


def authenticate(authorization: Optional[str], secret: str) -> AuthContext:
    return AuthContext(authorized=valid_bearer(authorization, secret))


def require_bearer(request: Request, secret: str) -> AuthContext:
    """
    Gate a request on its bearer credential.

    Args:
        request: Inbound request
        secret: Configured bearer secret

    Returns:
        The (authorized) AuthContext

    Raises:
        AuthError: If the header is missing or does not match
    """
    context = authenticate(request.headers.get("authorization"), secret)
    if not context.authorized:
        logger.warning(
            "Rejected request with missing or invalid bearer token",
            extra={
                "path": request.url.path,
                "method": request.method,
                "client": request.client.host if request.client else None,
                "has_authorization": "authorization" in request.headers,
            }
        )
        raise AuthError()
    return context
