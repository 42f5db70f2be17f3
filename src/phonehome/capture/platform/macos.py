"""lsof-backed socket sampler — the macOS path, and the fallback without /proc."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable

from phonehome.capture.base import Snapshot, normalize_ip
from phonehome.errors import SamplingError
from phonehome.session.models import ConnectionKey

logger = logging.getLogger(__name__)

# Seconds before an lsof invocation is abandoned.
_LSOF_TIMEOUT = 5

_ACTIVE_STATES = frozenset({"ESTABLISHED", "SYN_SENT"})


class LsofProvider:
    """Samples TCP sockets by running ``lsof`` scoped to the target pids."""

    name = "lsof"

    def __init__(self, binary: str = "lsof", timeout: float = _LSOF_TIMEOUT) -> None:
        self._binary = binary
        self._timeout = timeout

    def sample(self, pids: Iterable[int]) -> Snapshot:
        pid_list = [str(pid) for pid in pids]
        if not pid_list:
            return []

        try:
            result = subprocess.run(
                [self._binary, "-a", "-n", "-P", "-iTCP", "-p", ",".join(pid_list)],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, PermissionError) as exc:
            raise SamplingError(f"lsof invocation failed: {exc}") from exc

        # lsof exits 1 when nothing matched (e.g. the pid already exited)
        if result.returncode not in (0, 1):
            raise SamplingError(
                f"lsof exited {result.returncode}: {result.stderr.strip()}"
            )
        if result.returncode == 1 and result.stderr.strip():
            logger.debug("lsof: %s", result.stderr.strip())
        return parse_lsof_output(result.stdout)


def parse_lsof_output(output: str) -> Snapshot:
    """Parse ``lsof -n -P -iTCP`` columns into (pid, key) pairs.

    Columns: COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME [(STATE)]
    """
    snapshot: Snapshot = []
    for line in output.splitlines()[1:]:  # skip header
        parts = line.split()
        if len(parts) < 9:
            continue

        try:
            pid = int(parts[1])
        except ValueError:
            continue

        if parts[7].upper() != "TCP":
            continue

        name_field = parts[8]  # e.g., "10.0.0.1:54321->93.184.216.34:443"
        if "->" not in name_field:
            continue

        state = parts[9].strip("()").upper() if len(parts) > 9 else "ESTABLISHED"
        if state not in _ACTIVE_STATES:
            continue

        local, remote = name_field.split("->", 1)
        try:
            local_ip, local_port = _parse_addr(local)
            remote_ip, remote_port = _parse_addr(remote)
        except (ValueError, IndexError):
            continue

        snapshot.append(
            (pid, ConnectionKey(local_ip, local_port, remote_ip, remote_port))
        )
    return snapshot


def _parse_addr(addr: str) -> tuple[str, int]:
    """Parse 'ip:port' or '[ipv6]:port' string."""
    if addr.startswith("["):
        # IPv6: [::1]:8080
        bracket_end = addr.index("]")
        ip = addr[1:bracket_end]
        port = int(addr[bracket_end + 2 :])
    else:
        host, port_str = addr.rsplit(":", 1)
        ip = host
        port = int(port_str)
    if not ip or not 0 <= port <= 0xFFFF:
        raise ValueError(f"bad address {addr!r}")
    return normalize_ip(ip), port
