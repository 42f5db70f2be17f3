"""Policy engine — decides and enforces the action for each new connection."""

from __future__ import annotations

import logging
import os

from phonehome.actions.base import Blocker, NullBlocker
from phonehome.actions.block import FirewallBlocker
from phonehome.policy.models import EngineState, EventAction, PolicyMode
from phonehome.session.models import ConnectionEvent

logger = logging.getLogger(__name__)


class PolicyEngine:
    """Single-mode state machine applied to every new connection.

    OBSERVE logs everything. BLOCK_AND_CONTINUE marks every event blocked and
    tries to sever it. BLOCK_AND_EXIT does the same for the first event and
    then stops, asking the run to terminate the monitored process.
    """

    def __init__(self, mode: PolicyMode, blocker: Blocker | None = None) -> None:
        self.mode = mode
        self._blocker: Blocker = blocker if blocker is not None else NullBlocker()
        self._state = EngineState.ACTIVE
        self.block_failures = 0

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._state is EngineState.STOPPED

    @property
    def wants_termination(self) -> bool:
        return self.stopped and self.mode is PolicyMode.BLOCK_AND_EXIT

    def decide(self) -> EventAction:
        """Action for the next new connection under the run's mode."""
        if self.stopped:
            raise RuntimeError("Policy engine already stopped; no further events")
        if self.mode is PolicyMode.OBSERVE:
            return EventAction.LOGGED
        return EventAction.BLOCKED

    def enforce(self, event: ConnectionEvent) -> bool:
        """Carry out the event's action. Returns True if a block took effect.

        Block failures are logged and never raised.
        """
        if event.action is not EventAction.BLOCKED:
            return False

        try:
            severed = self._blocker.block(event)
        except Exception:
            logger.exception("Blocker raised while blocking %s", event.key.remote)
            severed = False

        if not severed:
            self.block_failures += 1
            log = logger.warning if self.block_failures == 1 else logger.debug
            log("Could not sever connection to %s", event.key.remote)

        if self.mode is PolicyMode.BLOCK_AND_EXIT:
            self._state = EngineState.STOPPED
            logger.info("Exit-first policy triggered by %s", event.key.remote)
        return severed

    def cleanup(self) -> None:
        try:
            self._blocker.cleanup()
        except Exception:
            logger.exception("Blocker cleanup failed")


def default_blocker(mode: PolicyMode) -> Blocker:
    """Firewall rules when privileged and blocking; a no-op blocker otherwise."""
    if mode is PolicyMode.OBSERVE:
        return NullBlocker("observe mode")
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return FirewallBlocker()
    return NullBlocker("firewall rules need root")
