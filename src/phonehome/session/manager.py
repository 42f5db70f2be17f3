"""Session manager — orchestrates sampling, reconciliation, policy, and stats."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence

from phonehome.actions.base import Blocker
from phonehome.capture.base import SnapshotProvider
from phonehome.capture.reconciler import Reconciler
from phonehome.config import MonitorConfig
from phonehome.errors import (
    PhoneHomeError,
    SamplingError,
    SamplingFatalError,
    SpawnError,
    TerminationError,
)
from phonehome.policy.engine import PolicyEngine, default_blocker
from phonehome.resolve import DomainResolver
from phonehome.session.models import (
    ConnectionEvent,
    ConnectionKey,
    RunSession,
    RunStatus,
)
from phonehome.session.stats import RunSummary, StatsAggregator
from phonehome.session.supervisor import (
    ProcessHandle,
    ProcessSupervisor,
    exit_code_of,
)

logger = logging.getLogger(__name__)


class SessionManager:
    """Manages one monitoring run: spawn, then poll→diff→act→fold→report.

    All run state (seen keys, stats, policy state) lives on the instance, so
    independent runs never share anything.
    """

    def __init__(
        self,
        config: MonitorConfig,
        provider: SnapshotProvider,
        supervisor: ProcessSupervisor | None = None,
        resolver: DomainResolver | None = None,
        blocker: Blocker | None = None,
        on_event: Callable[[ConnectionEvent], None] | None = None,
        on_resolved: Callable[[ConnectionEvent], None] | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._supervisor = supervisor or ProcessSupervisor()
        self._resolver = resolver or DomainResolver(timeout=config.dns_timeout)
        self._engine = PolicyEngine(
            config.mode,
            blocker if blocker is not None else default_blocker(config.mode),
        )
        self._reconciler = Reconciler()
        self._stats = StatsAggregator()
        self._on_event = on_event
        self._on_resolved = on_resolved
        self._stop_event = threading.Event()
        self._session: RunSession | None = None
        self._handle: ProcessHandle | None = None
        self._events_by_ip: dict[str, list[ConnectionEvent]] = {}
        self._sampling_failures = 0

    @property
    def session(self) -> RunSession | None:
        return self._session

    @property
    def engine(self) -> PolicyEngine:
        return self._engine

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def provider_name(self) -> str:
        return getattr(self._provider, "name", type(self._provider).__name__)

    def run(self, command: Sequence[str]) -> RunSession:
        """Launch the command. Raises SpawnError before any monitoring starts."""
        self._session = RunSession(command=" ".join(command), mode=self._config.mode)
        try:
            self._handle = self._supervisor.spawn(command)
        except SpawnError:
            self._session.status = RunStatus.ERROR
            self._session.end_time = time.time()
            raise

        self._session.pid = self._handle.pid
        self._session.status = RunStatus.RUNNING
        logger.info(
            "Running '%s' (PID %d) in %s mode via %s",
            self._session.command,
            self._handle.pid,
            self._config.mode.value,
            self.provider_name,
        )
        return self._session

    def monitor_loop(self) -> RunSession:
        """Blocking loop until the process tree exits, the policy stops, or stop()."""
        if self._session is None or self._handle is None:
            raise RuntimeError("No session started; call run() first")

        self._stop_event.clear()
        if self._config.startup_delay > 0:
            self._stop_event.wait(timeout=self._config.startup_delay)

        try:
            while not self._stop_event.is_set():
                # Checked before sampling so the final tick still runs after exit
                alive = self._supervisor.is_alive(
                    self._handle, include_children=self._config.include_children
                )
                self._poll_and_evaluate()

                if self._engine.stopped:
                    logger.info("Policy stopped the run")
                    break
                if not alive:
                    logger.info("Monitored process tree exited")
                    break
                self._stop_event.wait(timeout=self._config.poll_interval)
        except PhoneHomeError:
            self._session.status = RunStatus.ERROR
            raise
        finally:
            self._finalize()

        return self._session

    def stop(self) -> None:
        """Signal the monitor loop to stop."""
        self._stop_event.set()

    def summary(self) -> RunSummary:
        end_time = self._session.end_time if self._session is not None else None
        return self._stats.summary(end_time=end_time)

    def get_subprocess_returncode(self) -> int | None:
        """Return the child's shell-style exit code, or None while it runs."""
        if self._handle is None:
            return None
        rc = self._handle.process.poll()
        return exit_code_of(rc) if rc is not None else None

    def wait_subprocess(self) -> int | None:
        if self._handle is None:
            return None
        return self._supervisor.wait(self._handle)

    def terminate_subprocess(self) -> None:
        """Terminate the managed process tree if it is still running."""
        if self._handle is not None and self._supervisor.is_alive(self._handle):
            self._supervisor.terminate(self._handle)

    def _target_pids(self) -> list[int]:
        if self._handle is None:
            return []
        pids = [self._handle.pid]
        if self._config.include_children:
            pids.extend(sorted(self._supervisor.descendant_pids(self._handle)))
        return pids

    def _poll_and_evaluate(self) -> None:
        self._apply_resolutions()

        try:
            snapshot = self._provider.sample(self._target_pids())
        except SamplingError as exc:
            self._sampling_failures += 1
            logger.debug(
                "Sampling failed (%d/%d): %s",
                self._sampling_failures,
                self._config.max_sampling_failures,
                exc,
            )
            if self._sampling_failures >= self._config.max_sampling_failures:
                raise SamplingFatalError(self._sampling_failures, exc) from exc
            return

        self._sampling_failures = 0

        # Enforce the whole tick before any DNS wait
        fresh: list[ConnectionEvent] = []
        termination_error: TerminationError | None = None
        for pid, key in self._reconciler.reconcile(snapshot):
            fresh.append(self._enforce_new_connection(pid, key))
            if self._engine.wants_termination:
                termination_error = self._terminate_for_policy()
            if self._engine.stopped:
                break

        if fresh:
            self._record(fresh)
        if termination_error is not None:
            raise termination_error

    def _enforce_new_connection(self, pid: int, key: ConnectionKey) -> ConnectionEvent:
        event = ConnectionEvent(key=key, pid=pid, action=self._engine.decide())
        self._engine.enforce(event)
        return event

    def _terminate_for_policy(self) -> TerminationError | None:
        """Stop the process tree; a failure is returned so the tick can finish."""
        if self._session is None or self._handle is None:
            return None
        self._session.terminated_by_policy = True
        try:
            self._supervisor.terminate(self._handle)
        except TerminationError as exc:
            return exc
        return None

    def _record(self, events: list[ConnectionEvent]) -> None:
        """Resolve a tick's events under one shared deadline, then fold and report."""
        if self._session is None:
            return
        names = self._resolver.resolve_many(
            [event.remote_ip for event in events], self._config.dns_timeout
        )
        for event in events:
            domain = names.get(event.remote_ip)
            if domain:
                event.attach_domain(domain)

            self._session.events.append(event)
            self._events_by_ip.setdefault(event.remote_ip, []).append(event)
            self._stats.fold(event)
            logger.debug(
                "New connection PID %d %s -> %s (%s)",
                event.pid,
                event.key.local,
                event.key.remote,
                event.action.value,
            )

            if self._on_event:
                self._on_event(event)

    def _apply_resolutions(self) -> None:
        """Attach late reverse-DNS results to events already reported."""
        for update in self._resolver.drain_updates():
            patched = [
                event
                for event in self._events_by_ip.get(update.ip, ())
                if event.attach_domain(update.hostname)
            ]
            if not patched:
                continue
            self._stats.rekey(update.ip, update.hostname)
            logger.debug("Late resolution %s -> %s", update.ip, update.hostname)
            if self._on_resolved:
                for event in patched:
                    self._on_resolved(event)

    def _finalize(self) -> None:
        session = self._session
        if session is None:
            return
        # Results that arrived before the loop ended still count
        self._apply_resolutions()
        self._engine.cleanup()

        session.end_time = time.time()
        session.exit_code = self.get_subprocess_returncode()
        if session.status is RunStatus.RUNNING:
            session.status = (
                RunStatus.TERMINATED
                if session.terminated_by_policy
                else RunStatus.STOPPED
            )
