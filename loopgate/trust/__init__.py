"""OS trust store integration for loopgate."""

from .installer import (
    LinuxTrustStore,
    MacOSTrustStore,
    Platform,
    TrustStoreInstaller,
    UnsupportedTrustStore,
    WindowsTrustStore,
    create_installer,
    detect_platform,
    install_root,
)

__all__ = [
    "LinuxTrustStore",
    "MacOSTrustStore",
    "Platform",
    "TrustStoreInstaller",
    "UnsupportedTrustStore",
    "WindowsTrustStore",
    "create_installer",
    "detect_platform",
    "install_root",
]
