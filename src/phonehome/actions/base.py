"""Blocker protocol — how the policy engine attempts to sever a connection."""

from __future__ import annotations

import logging
from typing import Protocol

from phonehome.session.models import ConnectionEvent

logger = logging.getLogger(__name__)


class Blocker(Protocol):
    """Protocol for best-effort connection blocking mechanisms."""

    def block(self, event: ConnectionEvent) -> bool:
        """Try to sever the event's connection. Returns True on success."""
        ...

    def cleanup(self) -> None:
        """Undo anything block() installed."""
        ...


class NullBlocker:
    """Used when no blocking mechanism is available; every attempt fails."""

    def __init__(self, reason: str = "no blocking mechanism available") -> None:
        self.reason = reason

    def block(self, event: ConnectionEvent) -> bool:
        logger.debug("Cannot block %s: %s", event.key.remote, self.reason)
        return False

    def cleanup(self) -> None:
        pass
