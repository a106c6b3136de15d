"""
Input validation shared by the hosts, certificate and proxy components.
"""

import ipaddress
import re
from urllib.parse import urlsplit

from .errors import ValidationError

# Hostname labels: letters, digits and inner hyphens; single-label names allowed
_DOMAIN_RE = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


def normalize_domain(domain: str) -> str:
    """Lower-case and strip a domain, raising ValidationError if malformed."""
    if not isinstance(domain, str):
        raise ValidationError("Domain must be a string")
    value = domain.strip().lower().rstrip(".")
    if not value or len(value) > 253 or not _DOMAIN_RE.match(value):
        raise ValidationError(f"Invalid domain: {domain!r}")
    return value


def validate_ip(ip: str) -> str:
    """Return ip unchanged if it parses as an IPv4/IPv6 address."""
    try:
        ipaddress.ip_address(ip)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid IP address: {ip!r}") from None
    return ip


def normalize_target(target: str) -> str:
    """
    Normalize a backend target URL.

    A target without a scheme gets ``http://``. Only http and https backends
    with a host are accepted; a trailing slash is dropped.
    """
    if not isinstance(target, str) or not target.strip():
        raise ValidationError("Target is required")
    value = target.strip()
    if not value.startswith(("http://", "https://")):
        if "://" in value:
            raise ValidationError(f"Unsupported target scheme: {target!r}")
        value = f"http://{value}"

    parts = urlsplit(value)
    try:
        port = parts.port
    except ValueError:
        raise ValidationError(f"Invalid target port: {target!r}") from None
    if not parts.hostname:
        raise ValidationError(f"Target has no host: {target!r}")
    if port is not None and not 0 < port < 65536:
        raise ValidationError(f"Invalid target port: {target!r}")
    return value.rstrip("/")


def validate_port(port: int) -> int:
    if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
        raise ValidationError(f"Invalid port: {port!r}")
    return port
