"""Linux socket sampler — joins /proc/net/tcp{,6} rows to /proc/<pid>/fd inodes."""

from __future__ import annotations

import logging
import os
import socket
import struct
from collections.abc import Iterable
from pathlib import Path

from phonehome.capture.base import Snapshot, normalize_ip
from phonehome.errors import SamplingError
from phonehome.session.models import ConnectionKey

logger = logging.getLogger(__name__)

# Connected, or an outbound connect still in flight.
_ACTIVE_STATES = frozenset({"01", "02"})

_SOCKET_LINK_PREFIX = "socket:["


class ProcNetProvider:
    """Samples TCP sockets from the kernel connection tables.

    The tables list every socket on the host; ownership comes from the
    ``socket:[inode]`` links in each target pid's fd directory.
    """

    name = "procfs"

    def __init__(self, proc_root: Path | str = "/proc") -> None:
        self._root = Path(proc_root)

    def available(self) -> bool:
        return os.access(self._root / "net" / "tcp", os.R_OK)

    def sample(self, pids: Iterable[int]) -> Snapshot:
        targets = list(pids)
        owners: dict[int, int] = {}
        unreadable: list[int] = []
        for pid in targets:
            try:
                inodes = self._socket_inodes(pid)
            except SamplingError as exc:
                # One privileged descendant must not hide the others' sockets
                logger.debug("Skipping PID %d: %s", pid, exc)
                unreadable.append(pid)
                continue
            for inode in inodes:
                owners.setdefault(inode, pid)

        if targets and len(unreadable) == len(targets):
            raise SamplingError(
                f"No fd directory readable for PIDs {', '.join(map(str, targets))}"
            )

        if not owners:
            return []

        snapshot: Snapshot = []
        for inode, key in self._read_tables():
            pid = owners.get(inode)
            if pid is not None:
                snapshot.append((pid, key))
        return snapshot

    def _socket_inodes(self, pid: int) -> list[int]:
        fd_dir = self._root / str(pid) / "fd"
        try:
            entries = os.listdir(fd_dir)
        except FileNotFoundError:
            logger.debug("PID %d exited before its fds were read", pid)
            return []
        except OSError as exc:
            raise SamplingError(f"Cannot list {fd_dir}: {exc}") from exc

        inodes = []
        for fd in entries:
            try:
                link = os.readlink(fd_dir / fd)
            except OSError:
                # fd closed mid-scan
                continue
            if link.startswith(_SOCKET_LINK_PREFIX) and link.endswith("]"):
                try:
                    inodes.append(int(link[len(_SOCKET_LINK_PREFIX) : -1]))
                except ValueError:
                    continue
        return inodes

    def _read_tables(self) -> list[tuple[int, ConnectionKey]]:
        rows = []
        for table in ("tcp", "tcp6"):
            path = self._root / "net" / table
            try:
                content = path.read_text()
            except FileNotFoundError:
                if table == "tcp6":
                    continue
                raise SamplingError(f"Connection table {path} is missing")
            except OSError as exc:
                raise SamplingError(f"Cannot read {path}: {exc}") from exc
            rows.extend(parse_tcp_table(content))
        return rows


def parse_tcp_table(content: str) -> list[tuple[int, ConnectionKey]]:
    """Parse a /proc/net/tcp or tcp6 table into (inode, key) for active rows."""
    rows = []
    for line in content.splitlines()[1:]:  # skip header
        parts = line.split()
        if len(parts) < 10:
            continue

        if parts[3] not in _ACTIVE_STATES:
            continue

        local_addr = _parse_hex_addr(parts[1])
        remote_addr = _parse_hex_addr(parts[2])
        if local_addr is None or remote_addr is None:
            continue

        try:
            inode = int(parts[9])
        except ValueError:
            continue
        if inode == 0:
            continue

        local_ip, local_port = local_addr
        remote_ip, remote_port = remote_addr
        rows.append(
            (inode, ConnectionKey(local_ip, local_port, remote_ip, remote_port))
        )
    return rows


def _parse_hex_addr(hex_addr: str) -> tuple[str, int] | None:
    """Parse a table address like '0100007F:1F90' or a 32-digit IPv6 form.

    The kernel prints each 32-bit word of the address in host byte order.
    """
    try:
        addr_hex, port_hex = hex_addr.split(":")
        port = int(port_hex, 16)
        if len(addr_hex) == 8:
            packed = struct.pack("=I", int(addr_hex, 16))
            ip = socket.inet_ntop(socket.AF_INET, packed)
        elif len(addr_hex) == 32:
            packed = b"".join(
                struct.pack("=I", int(addr_hex[i : i + 8], 16))
                for i in range(0, 32, 8)
            )
            ip = socket.inet_ntop(socket.AF_INET6, packed)
        else:
            return None
        return normalize_ip(ip), port
    except (ValueError, struct.error, OSError):
        return None
