"""Firewall blocker — inject temporary rules to drop traffic to a destination."""

from __future__ import annotations

import logging
import platform
import subprocess

from phonehome.session.models import ConnectionEvent

logger = logging.getLogger(__name__)

_RULE_COMMENT = "phonehome-block"
_PF_ANCHOR = "phonehome"


class FirewallBlocker:
    """Blocks connections by injecting temporary firewall rules.

    Uses iptables on Linux and pfctl on macOS. Rules are tracked
    for cleanup when the run ends.
    """

    def __init__(self, system: str | None = None) -> None:
        self._blocked: set[tuple[str, int]] = set()
        self._system = system or platform.system()

    def block(self, event: ConnectionEvent) -> bool:
        target = (event.remote_ip, event.remote_port)
        if target in self._blocked:
            return True  # Already blocked

        logger.info("Blocking connection to %s", event.key.remote)

        if self._system == "Linux":
            success = self._block_iptables(*target)
        elif self._system == "Darwin":
            success = self._block_pf(*target)
        else:
            logger.warning("Blocking not supported on %s", self._system)
            return False

        if success:
            self._blocked.add(target)
        return success

    def cleanup(self) -> None:
        """Remove all temporary firewall rules."""
        count = len(self._blocked)
        if self._system == "Darwin" and self._blocked:
            self._flush_pf()
        else:
            for ip, port in list(self._blocked):
                self._unblock_iptables(ip, port)
        self._blocked.clear()
        if count:
            logger.info("Cleaned up %d firewall rules", count)

    @staticmethod
    def _iptables_binary(ip: str) -> str:
        return "ip6tables" if ":" in ip else "iptables"

    def _iptables_rule(self, op: str, ip: str, port: int) -> list[str]:
        return [
            self._iptables_binary(ip),
            op,
            "OUTPUT",
            "-p",
            "tcp",
            "-d",
            ip,
            "--dport",
            str(port),
            "-j",
            "REJECT",
            "--reject-with",
            "tcp-reset",
            "-m",
            "comment",
            "--comment",
            _RULE_COMMENT,
        ]

    def _block_iptables(self, ip: str, port: int) -> bool:
        try:
            subprocess.run(
                self._iptables_rule("-I", ip, port),
                check=True,
                capture_output=True,
                timeout=5,
            )
            return True
        except (
            subprocess.CalledProcessError,
            subprocess.TimeoutExpired,
            FileNotFoundError,
        ) as e:
            logger.warning("Failed to block %s:%d via iptables: %s", ip, port, e)
            return False

    def _unblock_iptables(self, ip: str, port: int) -> bool:
        try:
            subprocess.run(
                self._iptables_rule("-D", ip, port),
                check=True,
                capture_output=True,
                timeout=5,
            )
            return True
        except (
            subprocess.CalledProcessError,
            subprocess.TimeoutExpired,
            FileNotFoundError,
        ) as e:
            logger.warning("Failed to remove iptables rule for %s:%d: %s", ip, port, e)
            return False

    def _block_pf(self, ip: str, port: int) -> bool:
        """Load the full rule set into the phonehome pf anchor."""
        targets = self._blocked | {(ip, port)}
        rules = "".join(
            f"block return out quick proto tcp to {dst} port {dport}\n"
            for dst, dport in sorted(targets)
        )
        try:
            proc = subprocess.run(
                ["pfctl", "-a", _PF_ANCHOR, "-f", "-"],
                input=rules,
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.warning("Failed to block %s:%d via pf: %s", ip, port, e)
            return False
        if proc.returncode != 0:
            logger.warning("pfctl rejected rule for %s:%d: %s", ip, port, proc.stderr.strip())
            return False
        return True

    def _flush_pf(self) -> bool:
        """Flush the phonehome pf anchor."""
        try:
            subprocess.run(
                ["pfctl", "-a", _PF_ANCHOR, "-F", "rules"],
                capture_output=True,
                timeout=5,
            )
            return True
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
