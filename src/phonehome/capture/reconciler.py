"""Connection reconciler — turns repeated snapshots into first-sighting keys."""

from __future__ import annotations

from collections.abc import Iterable

from phonehome.session.models import ConnectionKey


class Reconciler:
    """Owns the set of keys seen this run and reports each key exactly once.

    The seen set only grows. A socket that closes and later reappears with
    the identical tuple is not reported again within the same run.
    """

    def __init__(self) -> None:
        self._seen: set[ConnectionKey] = set()

    def reconcile(
        self, snapshot: Iterable[tuple[int, ConnectionKey]]
    ) -> list[tuple[int, ConnectionKey]]:
        """Return the (pid, key) pairs whose key has never been seen, in snapshot order."""
        fresh: list[tuple[int, ConnectionKey]] = []
        for pid, key in snapshot:
            if key in self._seen:
                continue
            self._seen.add(key)
            fresh.append((pid, key))
        return fresh

    @property
    def seen(self) -> frozenset[ConnectionKey]:
        return frozenset(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)
