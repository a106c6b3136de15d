"""REST API routers for loopgate."""

from .certificates import router as certificates_router
from .hosts import router as hosts_router
from .proxies import router as proxies_router

__all__ = ["certificates_router", "hosts_router", "proxies_router"]
