"""Run configuration — mode, timing, and output options."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from phonehome.errors import ConfigError
from phonehome.policy.models import PolicyMode


@dataclass
class MonitorConfig:
    """Options for one monitoring run."""

    mode: PolicyMode = PolicyMode.OBSERVE
    poll_interval: float = 0.25
    dns_timeout: float = 1.0
    max_sampling_failures: int = 3
    # Grace period before the first sample so the child can exec
    startup_delay: float = 0.1
    include_children: bool = True
    verbose: bool = False
    quiet: bool = False
    proc_root: Path = Path("/proc")

    @classmethod
    def from_options(
        cls,
        exit_first: bool = False,
        block: bool = False,
        dns_timeout_ms: int = 1000,
        interval_ms: int = 250,
        verbose: bool = False,
        quiet: bool = False,
    ) -> MonitorConfig:
        """Build a config from CLI flag values."""
        if exit_first and block:
            raise ConfigError("--exit-first and --block are mutually exclusive")
        if dns_timeout_ms < 0:
            raise ConfigError("DNS timeout must not be negative")
        if interval_ms <= 0:
            raise ConfigError("Poll interval must be positive")

        if exit_first:
            mode = PolicyMode.BLOCK_AND_EXIT
        elif block:
            mode = PolicyMode.BLOCK_AND_CONTINUE
        else:
            mode = PolicyMode.OBSERVE

        return cls(
            mode=mode,
            poll_interval=interval_ms / 1000,
            dns_timeout=dns_timeout_ms / 1000,
            verbose=verbose,
            quiet=quiet,
        )
