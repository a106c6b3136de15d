"""
Certificate metadata model.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


@dataclass
class CertificateInfo:
    """Parsed metadata of a per-domain leaf certificate."""

    domain: str
    valid_from: datetime
    valid_to: datetime
    issuer: str
    is_valid: bool
    san: List[str] = field(default_factory=list)
    cert_path: Optional[str] = None
    key_path: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.valid_to

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "domain": self.domain,
            "valid_from": self.valid_from.isoformat(),
            "valid_to": self.valid_to.isoformat(),
            "issuer": self.issuer,
            "is_valid": self.is_valid,
            "san": list(self.san),
            "cert_path": self.cert_path,
            "key_path": self.key_path,
        }
