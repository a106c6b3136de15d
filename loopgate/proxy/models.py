"""
Proxy route model.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit


@dataclass
class ProxyRoute:
    """Maps a local domain to a backend target served over HTTPS."""

    domain: str
    target: str
    port: int = 443
    is_running: bool = False
    cert_path: Optional[str] = None
    key_path: Optional[str] = None

    @property
    def target_scheme(self) -> str:
        return urlsplit(self.target).scheme

    @property
    def target_host(self) -> str:
        return urlsplit(self.target).hostname or ""

    @property
    def target_port(self) -> int:
        port = urlsplit(self.target).port
        if port:
            return port
        return 443 if self.target_scheme == "https" else 80

    @property
    def _host_literal(self) -> str:
        host = self.target_host
        return f"[{host}]" if ":" in host else host

    @property
    def target_authority(self) -> str:
        """Host header value for the backend; default ports are omitted."""
        if self.target_port in (80, 443):
            return self._host_literal
        return f"{self._host_literal}:{self.target_port}"

    def target_url(self, path_qs: str) -> str:
        """Absolute backend URL for a request path (with query string)."""
        base = f"{self.target_scheme}://{self._host_literal}:{self.target_port}"
        prefix = urlsplit(self.target).path.rstrip("/")
        return f"{base}{prefix}{path_qs}"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "domain": self.domain,
            "target": self.target,
            "port": self.port,
            "is_running": self.is_running,
            "cert_path": self.cert_path,
            "key_path": self.key_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProxyRoute":
        """Create from dictionary; routes always load stopped."""
        return cls(
            domain=data["domain"],
            target=data["target"],
            port=data.get("port") or 443,
            is_running=False,
            cert_path=data.get("cert_path"),
            key_path=data.get("key_path"),
        )
