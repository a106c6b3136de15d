"""
Installs the loopgate root certificate into the operating system trust store.

The platform strategy is chosen once, when the installer is created, by
probing the running system. It is never re-inferred per call.
"""

import asyncio
import enum
import logging
import os
import shutil
import sys
from typing import List, Optional, Tuple

logger = logging.getLogger("loopgate.trust")

ANCHOR_NAME = "loopgate-root-ca.crt"


class Platform(enum.Enum):
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"


def detect_platform() -> Optional[Platform]:
    if sys.platform.startswith("win"):
        return Platform.WINDOWS
    if sys.platform == "darwin":
        return Platform.MACOS
    if sys.platform.startswith("linux"):
        return Platform.LINUX
    return None


async def _run(cmd: List[str], timeout: int = 60) -> Tuple[bool, str]:
    """Run a command; returns (success, combined output or error)."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        return False, f"{cmd[0]} timed out after {timeout}s"
    except FileNotFoundError:
        return False, f"{cmd[0]} not found"

    output = stderr.decode().strip() or stdout.decode().strip()
    return process.returncode == 0, output


class TrustStoreInstaller:
    """Interface: install a root certificate, returning (success, message)."""

    platform: Optional[Platform] = None

    async def install(self, cert_path: str) -> Tuple[bool, str]:
        raise NotImplementedError


class WindowsTrustStore(TrustStoreInstaller):
    platform = Platform.WINDOWS

    async def install(self, cert_path):
        ok, output = await _run(["certutil", "-addstore", "-f", "ROOT", cert_path])
        if ok:
            return True, "CA certificate installed in the Windows Trusted Root CA store."
        if "denied" in output.lower():
            return False, "Administrator privileges required. Run the command as administrator."
        return False, f"certutil failed: {output}"


class MacOSTrustStore(TrustStoreInstaller):
    platform = Platform.MACOS

    def __init__(self, keychain: str = "/Library/Keychains/System.keychain"):
        self.keychain = keychain

    async def install(self, cert_path):
        ok, output = await _run([
            "security", "add-trusted-cert",
            "-d", "-r", "trustRoot",
            "-k", self.keychain,
            cert_path,
        ])
        if ok:
            return True, (
                "CA certificate installed in the macOS System Keychain. "
                "Restart browsers for the change to take effect."
            )
        return False, f"security add-trusted-cert failed (run with sudo?): {output}"


class LinuxTrustStore(TrustStoreInstaller):
    """Copies the root into an anchor directory and refreshes the bundle."""

    platform = Platform.LINUX

    def __init__(self, anchor_dir: str, update_command: List[str]):
        self.anchor_dir = anchor_dir
        self.update_command = update_command

    @classmethod
    def probe(cls) -> Optional["LinuxTrustStore"]:
        """Pick the Debian or Red Hat layout, whichever this system has."""
        if shutil.which("update-ca-certificates"):
            return cls("/usr/local/share/ca-certificates", ["update-ca-certificates"])
        if shutil.which("update-ca-trust"):
            return cls("/etc/pki/ca-trust/source/anchors", ["update-ca-trust", "extract"])
        return None

    async def install(self, cert_path):
        destination = os.path.join(self.anchor_dir, ANCHOR_NAME)
        try:
            await asyncio.to_thread(shutil.copyfile, cert_path, destination)
        except PermissionError:
            return False, "Root privileges required. Run with sudo: sudo loopgate install-ca"
        except OSError as e:
            return False, f"Failed to copy CA certificate to {destination}: {e}"

        ok, output = await _run(self.update_command)
        if not ok:
            return False, f"{self.update_command[0]} failed: {output}"
        return True, (
            "CA certificate installed in the system certificate store. "
            "Restart browsers for the change to take effect."
        )


class UnsupportedTrustStore(TrustStoreInstaller):
    def __init__(self, reason: str):
        self.reason = reason

    async def install(self, cert_path):
        return False, f"{self.reason} Install {cert_path} manually."


def create_installer(platform: Optional[Platform] = None) -> TrustStoreInstaller:
    """Probe the system once and return the matching installer."""
    platform = platform or detect_platform()
    if platform is Platform.WINDOWS:
        return WindowsTrustStore()
    if platform is Platform.MACOS:
        return MacOSTrustStore()
    if platform is Platform.LINUX:
        installer = LinuxTrustStore.probe()
        if installer is not None:
            return installer
        return UnsupportedTrustStore("Could not determine the Linux certificate store layout.")
    return UnsupportedTrustStore(f"Unsupported platform: {sys.platform}.")


async def install_root(installer: TrustStoreInstaller, cert_path: str) -> Tuple[bool, str]:
    """Install ``cert_path`` if it exists, logging the outcome."""
    if not os.path.exists(cert_path):
        return False, "CA certificate not found. Run 'loopgate init-ca' first."
    ok, message = await installer.install(cert_path)
    if ok:
        logger.info(message)
    else:
        logger.warning(f"CA installation failed: {message}")
    return ok, message
