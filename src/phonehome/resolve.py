"""Reverse-DNS resolution for connection events.

Lookups run on their own daemon thread so a slow or unreachable resolver
never stalls the sampling loop. The caller waits at most ``timeout``
seconds; a lookup that finishes later still lands in the cache and is
posted as a late update for the loop to pick up via ``drain_updates()``.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedDomain:
    """A lookup that completed after its caller stopped waiting."""

    ip: str
    hostname: str


@dataclass
class _Lookup:
    ip: str
    done: threading.Event = field(default_factory=threading.Event)
    hostname: str | None = None
    late: bool = False


class DomainResolver:
    """Resolves IP addresses to hostnames with a bounded wait.

    All results, including failures, are cached for the lifetime of the
    resolver instance. Concurrent requests for the same IP share one lookup.

    Thread-safe: cache, in-flight table and update queue are guarded by a lock.
    """

    def __init__(self, timeout: float = 1.0) -> None:
        self.timeout = timeout
        self._cache: dict[str, str | None] = {}
        self._pending: dict[str, _Lookup] = {}
        self._updates: deque[ResolvedDomain] = deque()
        self._lock = threading.Lock()

    def resolve(self, ip: str, timeout: float | None = None) -> str | None:
        """Return the hostname for ``ip``, or None if unknown within ``timeout``."""
        return self.resolve_many([ip], timeout)[ip]

    def resolve_many(
        self, ips: Iterable[str], timeout: float | None = None
    ) -> dict[str, str | None]:
        """Resolve several IPs concurrently under one shared deadline.

        Every lookup is started before any is waited on, so the whole batch
        costs at most ``timeout`` seconds however many IPs it holds.
        """
        wait = max(self.timeout if timeout is None else timeout, 0.0)
        deadline = time.monotonic() + wait

        results: dict[str, str | None] = {}
        lookups: list[_Lookup] = []
        with self._lock:
            for ip in dict.fromkeys(ips):
                if ip in self._cache:
                    results[ip] = self._cache[ip]
                else:
                    lookups.append(self._start_lookup(ip))

        for lookup in lookups:
            remaining = max(deadline - time.monotonic(), 0.0)
            results[lookup.ip] = self._await(lookup, remaining, wait)
        return results

    def cached(self, ip: str) -> str | None:
        """Return a cached hostname without starting a lookup."""
        with self._lock:
            return self._cache.get(ip)

    def drain_updates(self) -> list[ResolvedDomain]:
        """Pop every late result posted since the last call."""
        with self._lock:
            updates = list(self._updates)
            self._updates.clear()
        return updates

    def _start_lookup(self, ip: str) -> _Lookup:
        """Join the in-flight lookup for ``ip`` or start one. Caller holds the lock."""
        lookup = self._pending.get(ip)
        if lookup is None:
            lookup = _Lookup(ip)
            self._pending[ip] = lookup
            threading.Thread(
                target=self._run_lookup,
                args=(lookup,),
                name=f"resolve-{ip}",
                daemon=True,
            ).start()
        return lookup

    def _await(self, lookup: _Lookup, remaining: float, wait: float) -> str | None:
        if lookup.done.wait(timeout=remaining):
            return lookup.hostname

        with self._lock:
            # Re-check under the lock: the lookup may have just finished
            if lookup.done.is_set():
                return lookup.hostname
            lookup.late = True
        logger.debug("Reverse lookup for %s exceeded %.3fs", lookup.ip, wait)
        return None

    def _run_lookup(self, lookup: _Lookup) -> None:
        hostname = self._reverse_dns(lookup.ip) or None
        with self._lock:
            self._cache[lookup.ip] = hostname
            self._pending.pop(lookup.ip, None)
            lookup.hostname = hostname
            lookup.done.set()
            if lookup.late and hostname:
                self._updates.append(ResolvedDomain(lookup.ip, hostname))

    @staticmethod
    def _reverse_dns(ip: str) -> str:
        """Perform a PTR lookup for the given IP."""
        try:
            hostname, _aliases, _addrs = socket.gethostbyaddr(ip)
            return hostname
        except (socket.herror, socket.gaierror, OSError, UnicodeError, ValueError) as exc:
            logger.debug("Reverse lookup failed for %s: %s", ip, exc)
            return ""
