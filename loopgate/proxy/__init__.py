"""HTTPS reverse proxy for loopgate."""

from .models import ProxyRoute
from .router import PROXY_IDENTIFIER, ProxyRouter
from .store import RouteStore

__all__ = [
    "PROXY_IDENTIFIER",
    "ProxyRoute",
    "ProxyRouter",
    "RouteStore",
]
