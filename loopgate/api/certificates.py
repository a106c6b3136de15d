"""
REST API for the local certificate authority.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..trust import install_root

logger = logging.getLogger("loopgate.api.certificates")

router = APIRouter(tags=["certificates"])


class CertificateCreate(BaseModel):
    domain: str


@router.get("/api/certificates")
async def list_certificates(request: Request):
    """List issued leaf certificates."""
    certificates = await request.app.state.ca.list()
    return {"success": True, "certificates": [c.to_dict() for c in certificates]}


@router.get("/api/certificates/{domain}")
async def get_certificate(domain: str, request: Request):
    """Verify the certificate stored for a domain."""
    info = await request.app.state.ca.verify(domain)
    if info is None:
        raise HTTPException(status_code=404, detail="Certificate not found")
    return {"success": True, "certificate": info.to_dict()}


@router.post("/api/certificates")
async def issue_certificate(body: CertificateCreate, request: Request):
    """Issue (or re-issue) a certificate for a domain."""
    info = await request.app.state.ca.issue(body.domain)
    return {"success": True, "certificate": info.to_dict()}


@router.delete("/api/certificates/{domain}")
async def delete_certificate(domain: str, request: Request):
    if not await request.app.state.ca.delete(domain):
        raise HTTPException(status_code=404, detail="Certificate not found")
    return {"success": True, "message": f"Certificate for {domain} removed successfully"}


@router.get("/api/ca")
async def get_ca(request: Request):
    """Root CA location and whether it has been generated."""
    ca = request.app.state.ca
    cert_path, _ = ca.root_paths
    return {"success": True, "exists": ca.root_exists(), "cert_path": cert_path}


@router.post("/api/ca/install")
async def install_ca(request: Request):
    """Generate the root CA if needed and add it to the OS trust store."""
    ca = request.app.state.ca
    cert_path, _ = await ca.initialize()
    ok, message = await install_root(request.app.state.trust_installer, cert_path)
    if not ok:
        raise HTTPException(status_code=500, detail=message)
    return {"success": True, "message": message}


@router.get("/api/status/{domain}")
async def domain_status(domain: str, request: Request):
    """Combined host, certificate and route state for one domain."""
    state = request.app.state
    hosts = await state.hosts.read_local()
    entry = next((h for h in hosts if h.domain.lower() == domain.lower()), None)
    info = await state.ca.verify(domain)
    route = state.router.get(domain)

    certificate_valid = bool(info and info.is_valid)
    return {
        "success": True,
        "status": {
            "domain": domain,
            "host_configured": entry is not None,
            "is_disabled": bool(entry and entry.is_disabled),
            "certificate_valid": certificate_valid,
            "proxy_running": bool(route and route.is_running),
            "is_valid": entry is not None and certificate_valid,
        },
    }
