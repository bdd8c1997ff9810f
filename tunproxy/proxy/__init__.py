"""
Proxy Package
=============

This package implements the authenticated forwarding endpoint that relays
browser requests to arbitrary targets.

Main Components:
----------------
- headers.py: request/response header policy (pure functions)
- engine.py: target URL validation, outbound dispatch, streamed relay
- routes.py: the /proxy endpoint and its registration

Usage:
------
    from tunproxy.proxy import register_proxy_route
    register_proxy_route(app, settings)
"""

from .routes import register_proxy_route

__all__ = ["register_proxy_route"]
