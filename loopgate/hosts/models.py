"""
Hosts file entry model.
"""

from dataclasses import dataclass

LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")


@dataclass
class HostEntry:
    """One ``ip domain`` mapping found in the hosts file."""

    ip: str
    domain: str
    is_managed: bool = False
    is_disabled: bool = False
    line_index: int = 0

    @property
    def is_local(self) -> bool:
        return self.ip in LOOPBACK_ADDRESSES

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "ip": self.ip,
            "domain": self.domain,
            "is_managed": self.is_managed,
            "is_disabled": self.is_disabled,
            "line_index": self.line_index,
        }
