"""
REST API for proxy routes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

logger = logging.getLogger("loopgate.api.proxies")

router = APIRouter(prefix="/api/proxies", tags=["proxies"])


class ProxyCreate(BaseModel):
    domain: str
    target: str
    port: Optional[int] = None


class ProxyUpdate(BaseModel):
    target: Optional[str] = None
    port: Optional[int] = None


@router.get("")
async def list_proxies(request: Request):
    routes = request.app.state.router.list()
    return {"success": True, "proxies": [r.to_dict() for r in routes]}


@router.post("")
async def add_proxy(body: ProxyCreate, request: Request):
    """Register a route for a domain present in the hosts file."""
    state = request.app.state
    hosts = await state.hosts.read_local()
    if not any(h.domain.lower() == body.domain.lower() for h in hosts):
        raise HTTPException(status_code=404, detail="Domain not found in hosts file")

    route = await state.router.register(body.domain, body.target, body.port)
    return {
        "success": True,
        "message": f"Proxy configuration for {route.domain} added successfully",
        "proxy": route.to_dict(),
    }


@router.patch("/{domain}")
async def update_proxy(domain: str, body: ProxyUpdate, request: Request):
    if body.target is None and body.port is None:
        raise HTTPException(status_code=400, detail="No update parameters provided")
    if not await request.app.state.router.update(domain, target=body.target, port=body.port):
        raise HTTPException(status_code=404, detail="Proxy not found")
    return {"success": True, "message": f"Proxy for {domain} updated successfully"}


@router.delete("/{domain}")
async def remove_proxy(domain: str, request: Request):
    if not await request.app.state.router.unregister(domain):
        raise HTTPException(status_code=404, detail="Proxy not found")
    return {"success": True, "message": f"Proxy for {domain} removed successfully"}


@router.post("/{domain}/start")
async def start_proxy(domain: str, request: Request):
    """
    Start serving a route, issuing a certificate first when the domain has
    none or its current one is no longer valid.
    """
    state = request.app.state
    if state.router.get(domain) is None:
        raise HTTPException(status_code=404, detail="Proxy not found")

    info = await state.ca.verify(domain)
    if info is None or not info.is_valid:
        logger.info(f"No valid certificate for {domain}, issuing one")
        info = await state.ca.issue(domain)

    if not await state.router.start(domain, info.cert_path, info.key_path):
        raise HTTPException(status_code=404, detail="Proxy not found")
    return {"success": True, "message": f"Proxy for {domain} started successfully"}


@router.post("/{domain}/stop")
async def stop_proxy(domain: str, request: Request):
    if not await request.app.state.router.stop(domain):
        raise HTTPException(status_code=404, detail="Proxy not found or not running")
    return {"success": True, "message": f"Proxy for {domain} stopped successfully"}
