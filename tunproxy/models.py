"""
Data Models Module

Plain containers passed between the authenticator, the header transformers
and the proxy engine. None of them outlives a single request/response cycle.

Header multimaps are ordered lists of (name, value) pairs: duplicates and
order are preserved in both directions and names compare case-insensitively.
"""

import enum
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple


HeaderList = List[Tuple[str, str]]


# ============================================================================
# Header Classification
# ============================================================================

class HeaderRule(enum.Enum):
    """How an inbound request header is treated."""

    WHITELISTED = "whitelisted"
    TUN_PREFIXED = "tun-prefixed"
    DROPPED = "dropped"


# ============================================================================
# Request / Response
# ============================================================================

@dataclass
class ProxyRequest:
    """A validated request about to be dispatched to the target."""

    url: str
    method: str
    headers: HeaderList = field(default_factory=list)
    body: Optional[AsyncIterator[bytes]] = None


@dataclass
class ResponseHead:
    """Status line and headers of a response, without its body."""

    status_code: int
    headers: HeaderList = field(default_factory=list)

    def get_all(self, name: str) -> List[str]:
        lowered = name.lower()
        return [v for k, v in self.headers if k.lower() == lowered]

    def get(self, name: str) -> Optional[str]:
        values = self.get_all(name)
        return values[0] if values else None


@dataclass
class ProxyResponse(ResponseHead):
    """A transformed response ready to be streamed back to the caller."""

    body: Optional[AsyncIterator[bytes]] = None


@dataclass(frozen=True)
class RedirectEnvelope:
    """Metadata of a 3xx response that is delivered to the caller as a 200."""

    status: int
    location: str
    proxy_location: str


@dataclass(frozen=True)
class AuthContext:
    """Outcome of the bearer credential check."""

    authorized: bool
