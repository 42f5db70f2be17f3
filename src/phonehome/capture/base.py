"""SnapshotProvider protocol — all socket samplers must satisfy this."""

from __future__ import annotations

import ipaddress
import logging
import shutil
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from phonehome.errors import UnsupportedPlatformError
from phonehome.session.models import ConnectionKey

logger = logging.getLogger(__name__)

Snapshot = list[tuple[int, ConnectionKey]]


@runtime_checkable
class SnapshotProvider(Protocol):
    """Protocol for platform socket samplers."""

    name: str

    def sample(self, pids: Iterable[int]) -> Snapshot:
        """Return the active TCP sockets owned by ``pids``.

        Pairs come back in a stable order. A pid that no longer exists
        contributes nothing. Raises SamplingError when the snapshot itself
        could not be taken.
        """
        ...


def normalize_ip(ip: str) -> str:
    """Canonical text form of an address; IPv4-mapped IPv6 becomes IPv4."""
    try:
        addr = ipaddress.ip_address(ip.strip("[]").split("%", 1)[0])
    except ValueError:
        return ip
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def select_provider(proc_root: str | Path = "/proc") -> SnapshotProvider:
    """Pick the sampler for this host. Called once at startup."""
    from phonehome.capture.platform.linux import ProcNetProvider
    from phonehome.capture.platform.macos import LsofProvider

    if sys.platform.startswith("linux"):
        provider = ProcNetProvider(proc_root=Path(proc_root))
        if provider.available():
            logger.debug("Using kernel socket tables under %s", proc_root)
            return provider
        logger.debug("Kernel socket tables unreadable, trying lsof")

    if shutil.which("lsof"):
        logger.debug("Using lsof sampler")
        return LsofProvider()

    raise UnsupportedPlatformError(
        f"No socket sampler available on {sys.platform}: "
        "need a readable /proc/net/tcp or the lsof utility"
    )
