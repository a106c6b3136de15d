"""
REST API for hosts file entries.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..errors import LoopgateError

logger = logging.getLogger("loopgate.api.hosts")

router = APIRouter(prefix="/api/hosts", tags=["hosts"])


# ── Request models ───────────────────────────────────────────────────

class HostCreate(BaseModel):
    domain: str
    ip: str = "127.0.0.1"


class HostAdopt(BaseModel):
    ip: str = "127.0.0.1"


class HostToggle(BaseModel):
    disabled: bool
    ip: str = "127.0.0.1"


# ── Routes ───────────────────────────────────────────────────────────

@router.get("")
async def list_hosts(request: Request):
    """List loopback entries in the hosts file."""
    hosts = await request.app.state.hosts.read_local()
    return {"success": True, "hosts": [h.to_dict() for h in hosts]}


@router.post("")
async def add_host(body: HostCreate, request: Request):
    """Add (or enable, or adopt) a managed host entry."""
    await request.app.state.hosts.add(body.domain, body.ip)
    return {"success": True, "message": f"Host {body.domain} added successfully"}


@router.post("/import-all")
async def import_all_hosts(request: Request):
    """Adopt every unmanaged loopback entry."""
    count = await request.app.state.hosts.import_all()
    if count == 0:
        raise HTTPException(status_code=404, detail="No hosts found to import")
    return {"success": True, "count": count, "message": f"{count} hosts imported successfully"}


@router.post("/{domain}/adopt")
async def adopt_host(domain: str, request: Request, body: Optional[HostAdopt] = None):
    """Mark an existing entry as managed by loopgate."""
    ip = body.ip if body else "127.0.0.1"
    if not await request.app.state.hosts.adopt(domain, ip):
        raise HTTPException(status_code=404, detail="Host not found or already adopted")
    return {"success": True, "message": f"Host {domain} adopted successfully"}


@router.patch("/{domain}/toggle")
async def toggle_host(domain: str, body: HostToggle, request: Request):
    """Enable or disable a managed entry."""
    if not await request.app.state.hosts.set_enabled(domain, not body.disabled, body.ip):
        raise HTTPException(
            status_code=404,
            detail="Host not found or not created by this application",
        )
    state = "disabled" if body.disabled else "enabled"
    return {"success": True, "message": f"Host {domain} {state} successfully"}


@router.delete("/{domain}")
async def remove_host(domain: str, request: Request, ip: str = "127.0.0.1"):
    """
    Remove a managed entry, then stop its route and delete its
    certificate. Nothing is touched when the entry is not ours.
    """
    state = request.app.state

    if not await state.hosts.remove(domain, ip):
        raise HTTPException(
            status_code=404,
            detail="Host not found or not created by this application",
        )

    route = state.router.get(domain)
    if route and route.is_running:
        await state.router.stop(domain)

    certificate_removed = False
    try:
        certificate_removed = await state.ca.delete(domain)
    except LoopgateError as e:
        logger.error(f"Error removing certificate for {domain}: {e}")

    message = (
        f"Host {domain} and its certificate removed successfully"
        if certificate_removed
        else f"Host {domain} removed successfully"
    )
    return {"success": True, "message": message, "certificate_removed": certificate_removed}
