"""Session data models — connection keys, events, and run state."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import NamedTuple

from phonehome.policy.models import EventAction, PolicyMode


class RunStatus(enum.Enum):
    """Lifecycle state of a monitoring run."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    ERROR = "error"


class ConnectionKey(NamedTuple):
    """Identity of one observed TCP socket."""

    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    protocol: str = "tcp"

    @property
    def remote(self) -> str:
        return _join_host_port(self.remote_ip, self.remote_port)

    @property
    def local(self) -> str:
        return _join_host_port(self.local_ip, self.local_port)


@dataclass
class ConnectionEvent:
    """A newly observed connection and the policy's decision about it.

    Everything except ``resolved_domain`` is fixed at creation. The domain
    starts out absent and may be attached once, when a reverse lookup
    finishes after the event was already reported.
    """

    key: ConnectionKey
    pid: int
    action: EventAction = EventAction.LOGGED
    resolved_domain: str | None = None
    observed_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def remote_ip(self) -> str:
        return self.key.remote_ip

    @property
    def remote_port(self) -> int:
        return self.key.remote_port

    @property
    def destination(self) -> str:
        """Domain if resolved, bare IP otherwise."""
        return self.resolved_domain or self.key.remote_ip

    @property
    def blocked(self) -> bool:
        return self.action is EventAction.BLOCKED

    def attach_domain(self, domain: str) -> bool:
        """Set the resolved domain if none is set yet. Returns True if applied."""
        if self.resolved_domain is not None or not domain:
            return False
        self.resolved_domain = domain
        return True


@dataclass
class RunSession:
    """Record of one monitoring run."""

    command: str
    mode: PolicyMode
    pid: int = 0
    status: RunStatus = RunStatus.PENDING
    events: list[ConnectionEvent] = field(default_factory=list)
    exit_code: int | None = None
    terminated_by_policy: bool = False
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)


def _join_host_port(ip: str, port: int) -> str:
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"
