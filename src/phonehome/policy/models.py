"""Policy data models — run modes and per-event actions."""

from __future__ import annotations

import enum


class PolicyMode(enum.Enum):
    """How the run treats every new connection. Fixed for the whole run."""

    OBSERVE = "observe"
    BLOCK_AND_EXIT = "block-and-exit"
    BLOCK_AND_CONTINUE = "block-and-continue"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


class EventAction(enum.Enum):
    """What happened to a connection once the policy decided."""

    LOGGED = "logged"
    BLOCKED = "blocked"


class EngineState(enum.Enum):
    """Lifecycle of the policy engine within one run."""

    ACTIVE = "active"
    STOPPED = "stopped"


_MODE_LABELS = {
    PolicyMode.OBSERVE: "Monitor Only",
    PolicyMode.BLOCK_AND_EXIT: "Exit on First Connection",
    PolicyMode.BLOCK_AND_CONTINUE: "Block Connections",
}
