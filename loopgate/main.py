"""
Application assembly for loopgate.

Builds the hosts registry, certificate authority and proxy router from
settings, attaches them to the FastAPI app state and ties their lifecycle
to the app's.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import certificates_router, hosts_router, proxies_router
from .certs import LocalCertificateAuthority, create_signer
from .config import Settings, get_settings
from .errors import (
    ListenError,
    LoopgateError,
    NotFoundError,
    ValidationError,
)
from .hosts import HostRegistry
from .proxy import ProxyRouter
from .trust import create_installer

logger = logging.getLogger("loopgate")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _status_for(exc: LoopgateError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ListenError):
        return 409
    return 500


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the admin API with fresh component instances."""
    settings = settings or get_settings()

    hosts = HostRegistry(settings.hosts_file)
    ca = LocalCertificateAuthority(
        settings.certs_dir,
        signer=create_signer(settings.signer, settings.openssl_bin),
        root_key_size=settings.root_key_size,
        ca_validity_days=settings.ca_validity_days,
        leaf_validity_days=settings.leaf_validity_days,
    )
    router = ProxyRouter(
        settings.routes_file,
        host=settings.proxy_host,
        default_port=settings.default_proxy_port,
        shutdown_timeout=settings.shutdown_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await ca.initialize()
            logger.info("Certificate authority initialized")
        except LoopgateError as e:
            logger.error(f"Failed to initialize certificate authority: {e}")
            raise
        yield
        await router.stop_all()
        logger.info("loopgate shut down")

    app = FastAPI(
        title="loopgate",
        description="Local domains over trusted HTTPS",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hosts = hosts
    app.state.ca = ca
    app.state.router = router
    app.state.trust_installer = create_installer()

    @app.exception_handler(LoopgateError)
    async def loopgate_error_handler(request: Request, exc: LoopgateError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "detail": str(exc)},
        )

    app.include_router(hosts_router)
    app.include_router(certificates_router)
    app.include_router(proxies_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "ok",
            "running_routes": sum(1 for r in router.list() if r.is_running),
            "listening_ports": router.listening_ports,
        }

    return app
