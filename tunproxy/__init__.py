"""
tunproxy
========

Authenticated HTTP forwarding proxy for browser clients.

Browsers cannot read cross-origin responses, set forbidden request headers
or observe redirects and cookies of other origins. tunproxy relays such
calls through a trusted intermediary:

    GET /proxy?url=https://api.example.com/v1/items
    Authorization: Bearer <token>
    tun-Cookie: session=abc

Packages:
    - auth:  bearer secret verification
    - proxy: header policy, forwarding engine and the /proxy route

Modules:
    - config: environment-driven settings
    - errors: per-request error taxonomy
    - models: request/response containers
    - main:   application factory and lifespan
"""

__version__ = "1.0.0"
