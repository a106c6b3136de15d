"""
Hosts file registry.

A managed entry is always two adjacent lines: the data line, commented out
when disabled, followed directly by a sentinel comment::

    127.0.0.1 demo.local
    # @loopgate/active

    # 127.0.0.1 old.local
    # @loopgate/disabled

Anything without that adjacency is foreign and is left untouched by
``set_enabled`` and ``remove``. So is a commented line followed by the
active sentinel, which is what a hand-edited managed entry looks like.

Mutations are read-modify-write of the whole file, serialized by an
in-process lock only. Another process editing the hosts file at the same
moment can still lose an update.
"""

import asyncio
import ipaddress
import logging
import os
import tempfile
from typing import Callable, List, Optional, Tuple

from ..errors import HostsFileError, LoopgateError
from ..validation import normalize_domain, validate_ip
from .models import HostEntry

logger = logging.getLogger("loopgate.hosts")

ACTIVE_SENTINEL = "# @loopgate/active"
DISABLED_SENTINEL = "# @loopgate/disabled"
SENTINELS = (ACTIVE_SENTINEL, DISABLED_SENTINEL)


def _split(content: str) -> Tuple[List[str], str]:
    newline = "\r\n" if "\r\n" in content else "\n"
    return content.split(newline), newline


def _data_fields(line: str) -> Optional[Tuple[str, str, bool]]:
    """
    Return (ip, domain, commented) for a data line, or None.

    ``line`` must already be stripped. Sentinels and lines whose first field
    is not an IP address are not data lines.
    """
    if not line or line in SENTINELS:
        return None
    commented = line.startswith("#")
    body = line[1:].strip() if commented else line
    parts = body.split()
    if len(parts) < 2:
        return None
    try:
        ipaddress.ip_address(parts[0])
    except ValueError:
        return None
    return parts[0], parts[1], commented


def _sentinel_after(lines: List[str], index: int) -> Optional[str]:
    if index + 1 < len(lines):
        following = lines[index + 1].strip()
        if following in SENTINELS:
            return following
    return None


def parse_hosts(content: str) -> List[HostEntry]:
    """Parse hosts file content into entries."""
    lines, _ = _split(content)
    entries: List[HostEntry] = []

    i = 0
    while i < len(lines):
        fields = _data_fields(lines[i].strip())
        if fields is None:
            i += 1
            continue

        ip, domain, commented = fields
        sentinel = _sentinel_after(lines, i)

        # A comment is only ours when it carries the disabled sentinel
        if commented and sentinel != DISABLED_SENTINEL:
            i += 1
            continue

        entries.append(HostEntry(
            ip=ip,
            domain=domain,
            is_managed=sentinel is not None,
            is_disabled=commented,
            line_index=i,
        ))

        # Skip the sentinel bound to this entry
        i += 2 if sentinel else 1

    return entries


def _find_managed(lines: List[str], ip: str, domain: str) -> Optional[Tuple[int, bool]]:
    """Locate the managed block for ip+domain; returns (index, commented)."""
    for i, raw in enumerate(lines):
        fields = _data_fields(raw.strip())
        if fields is None:
            continue
        line_ip, line_domain, commented = fields
        if line_ip != ip or line_domain.lower() != domain:
            continue
        sentinel = _sentinel_after(lines, i)
        if sentinel and (not commented or sentinel == DISABLED_SENTINEL):
            return i, commented
    return None


def _find_unmanaged(lines: List[str], ip: str, domain: str) -> Optional[int]:
    """Locate an active data line for ip+domain that has no sentinel."""
    for i, raw in enumerate(lines):
        fields = _data_fields(raw.strip())
        if fields is None:
            continue
        line_ip, line_domain, commented = fields
        if (
            not commented
            and line_ip == ip
            and line_domain.lower() == domain
            and _sentinel_after(lines, i) is None
        ):
            return i
    return None


class HostRegistry:
    """
    Reads and rewrites the hosts file, tracking which loopback entries
    belong to loopgate.
    """

    def __init__(self, hosts_file: str):
        self.hosts_file = str(hosts_file)
        self._lock = asyncio.Lock()

    # ── File access ───────────────────────────────────────────────────

    def _read_file(self) -> str:
        try:
            with open(self.hosts_file, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except OSError as e:
            raise HostsFileError(f"Failed to read hosts file {self.hosts_file}: {e}") from e

    def _write_file(self, content: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.hosts_file))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".hosts-", dir=directory)
        except OSError:
            # /etc is usually not writable even when /etc/hosts is
            self._write_in_place(content)
            return

        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            try:
                os.chmod(tmp_path, os.stat(self.hosts_file).st_mode & 0o777)
            except OSError:
                pass
            os.replace(tmp_path, self.hosts_file)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.debug(f"Atomic replace of {self.hosts_file} failed ({e}), writing in place")
            self._write_in_place(content)

    def _write_in_place(self, content: str) -> None:
        try:
            with open(self.hosts_file, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise HostsFileError(f"Failed to write hosts file {self.hosts_file}: {e}") from e

    async def _mutate(self, edit: Callable[[List[str]], bool]) -> bool:
        """
        Apply ``edit`` to the file's lines under the registry lock.

        ``edit`` changes the list in place and returns whether it did.
        """
        async with self._lock:
            content = await asyncio.to_thread(self._read_file)
            lines, newline = _split(content)
            if not edit(lines):
                return False
            await asyncio.to_thread(self._write_file, newline.join(lines))
            return True

    # ── Queries ───────────────────────────────────────────────────────

    async def read(self) -> List[HostEntry]:
        """Return every entry in the hosts file."""
        content = await asyncio.to_thread(self._read_file)
        return parse_hosts(content)

    async def read_local(self) -> List[HostEntry]:
        """Return entries pointing at a loopback address."""
        return [entry for entry in await self.read() if entry.is_local]

    async def get(self, domain: str, ip: str = "127.0.0.1") -> Optional[HostEntry]:
        """Return the entry for ip+domain, preferring a managed one."""
        domain = normalize_domain(domain)
        matches = [
            e for e in await self.read()
            if e.ip == ip and e.domain.lower() == domain
        ]
        if not matches:
            return None
        managed = [e for e in matches if e.is_managed]
        return managed[0] if managed else matches[0]

    # ── Mutations ─────────────────────────────────────────────────────

    async def add(self, domain: str, ip: str = "127.0.0.1") -> bool:
        """
        Make ip+domain a managed, enabled entry.

        Enables a disabled managed entry, adopts an unmanaged one in place,
        or appends a new block. Never duplicates an existing pair.
        """
        domain = normalize_domain(domain)
        validate_ip(ip)

        existing = await self.get(domain, ip)
        if existing and existing.is_managed:
            if existing.is_disabled:
                return await self.set_enabled(domain, True, ip)
            return True
        if existing:
            return await self.adopt(domain, ip)

        def append(lines: List[str]) -> bool:
            # Re-check under the lock
            if _find_managed(lines, ip, domain) is not None:
                return False
            if _find_unmanaged(lines, ip, domain) is not None:
                return False
            if lines and lines[-1] == "":
                lines.pop()
            lines.extend([f"{ip} {domain}", ACTIVE_SENTINEL, ""])
            return True

        added = await self._mutate(append)
        if added:
            logger.info(f"Added host entry: {ip} {domain}")
            return True
        # Another task got there first
        return await self.add(domain, ip)

    async def adopt(self, domain: str, ip: str = "127.0.0.1") -> bool:
        """Mark an existing unmanaged entry as managed by loopgate."""
        domain = normalize_domain(domain)

        def mark(lines: List[str]) -> bool:
            index = _find_unmanaged(lines, ip, domain)
            if index is None:
                return False
            lines.insert(index + 1, ACTIVE_SENTINEL)
            return True

        adopted = await self._mutate(mark)
        if adopted:
            logger.info(f"Adopted host entry: {ip} {domain}")
        return adopted

    async def import_all(self) -> int:
        """Adopt every unmanaged loopback entry; returns how many were adopted."""
        entries = await self.read_local()
        pending = []
        for entry in entries:
            pair = (entry.ip, entry.domain.lower())
            if not entry.is_managed and pair not in pending:
                pending.append(pair)

        adopted = 0
        for ip, domain in pending:
            try:
                if await self.adopt(domain, ip):
                    adopted += 1
            except LoopgateError as e:
                logger.warning(f"Failed to import {ip} {domain}: {e}")

        if adopted:
            logger.info(f"Imported {adopted} local host entries")
        return adopted

    async def set_enabled(self, domain: str, enabled: bool, ip: str = "127.0.0.1") -> bool:
        """Switch a managed entry between its active and disabled encodings."""
        domain = normalize_domain(domain)
        found = []

        def toggle(lines: List[str]) -> bool:
            match = _find_managed(lines, ip, domain)
            if match is None:
                return False
            found.append(match)
            index, commented = match
            data = lines[index].strip()
            body = data[1:].strip() if commented else data
            new_data = body if enabled else f"# {body}"
            new_sentinel = ACTIVE_SENTINEL if enabled else DISABLED_SENTINEL

            if commented == (not enabled) and lines[index + 1].strip() == new_sentinel:
                return False
            if commented == (not enabled):
                lines[index + 1] = new_sentinel
            else:
                lines[index] = new_data
                lines[index + 1] = new_sentinel
            return True

        changed = await self._mutate(toggle)
        if changed:
            state = "enabled" if enabled else "disabled"
            logger.info(f"Host entry {ip} {domain} {state}")
        return bool(found)

    async def remove(self, domain: str, ip: str = "127.0.0.1") -> bool:
        """Delete a managed block; foreign entries are never removed."""
        domain = normalize_domain(domain)

        def delete(lines: List[str]) -> bool:
            match = _find_managed(lines, ip, domain)
            if match is None:
                return False
            index, _ = match
            del lines[index:index + 2]
            return True

        removed = await self._mutate(delete)
        if removed:
            logger.info(f"Removed host entry: {ip} {domain}")
        return removed
