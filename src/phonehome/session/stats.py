"""Run statistics — counters folded from the event stream."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from phonehome.session.models import ConnectionEvent


@dataclass
class RunStats:
    """Mutable counters for one run. Written only by the monitor loop."""

    total_connections: int = 0
    blocked_connections: int = 0
    # Insertion order is first-seen order; summary() relies on it for ties.
    domain_counts: dict[str, int] = field(default_factory=dict)
    ips: set[str] = field(default_factory=set)
    start_time: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RunSummary:
    """Read-only end-of-run report."""

    total_connections: int
    blocked_connections: int
    unique_ips: int
    duration: float
    destinations: tuple[tuple[str, int], ...] = ()

    @property
    def unique_destinations(self) -> int:
        return len(self.destinations)

    def top(self, n: int = 5) -> tuple[tuple[str, int], ...]:
        return self.destinations[:n]

    def share(self, count: int) -> float:
        """Percentage of all connections that ``count`` represents."""
        if not self.total_connections:
            return 0.0
        return count / self.total_connections * 100.0


class StatsAggregator:
    """Folds connection events into RunStats and produces the final summary."""

    def __init__(self) -> None:
        self.stats = RunStats()

    def fold(self, event: ConnectionEvent) -> None:
        """Count one event. Call after the policy has set its action."""
        stats = self.stats
        stats.total_connections += 1
        if event.blocked:
            stats.blocked_connections += 1
        stats.ips.add(event.remote_ip)
        bucket = event.destination
        stats.domain_counts[bucket] = stats.domain_counts.get(bucket, 0) + 1

    def rekey(self, ip: str, domain: str) -> int:
        """Move the count kept under a bare IP to its late-resolved domain.

        The merged bucket keeps whichever of the two was seen first.
        Returns the number of connections moved.
        """
        counts = self.stats.domain_counts
        moved = counts.get(ip, 0)
        if not moved or ip == domain:
            return 0

        rebuilt: dict[str, int] = {}
        for name, count in counts.items():
            if name in (ip, domain):
                rebuilt[domain] = rebuilt.get(domain, 0) + count
            else:
                rebuilt[name] = count
        self.stats.domain_counts = rebuilt
        return moved

    def summary(self, end_time: float | None = None) -> RunSummary:
        stats = self.stats
        end = end_time if end_time is not None else time.time()
        # sorted() is stable, so equal counts keep first-seen order
        ranked = sorted(stats.domain_counts.items(), key=lambda item: -item[1])
        return RunSummary(
            total_connections=stats.total_connections,
            blocked_connections=stats.blocked_connections,
            unique_ips=len(stats.ips),
            duration=max(0.0, end - stats.start_time),
            destinations=tuple(ranked),
        )
