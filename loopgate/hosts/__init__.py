"""Hosts file management for loopgate."""

from .models import HostEntry, LOOPBACK_ADDRESSES
from .registry import ACTIVE_SENTINEL, DISABLED_SENTINEL, HostRegistry, parse_hosts

__all__ = [
    "ACTIVE_SENTINEL",
    "DISABLED_SENTINEL",
    "HostEntry",
    "HostRegistry",
    "LOOPBACK_ADDRESSES",
    "parse_hosts",
]
