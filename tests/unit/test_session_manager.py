"""Tests for the session manager monitor loop."""

from __future__ import annotations

import dataclasses
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from fakes import CHILD_PID, FakeProvider, FakeSupervisor, make_key

from phonehome.config import MonitorConfig
from phonehome.errors import (
    SamplingError,
    SamplingFatalError,
    SpawnError,
    TerminationError,
)
from phonehome.policy.models import EventAction, PolicyMode
from phonehome.resolve import DomainResolver, ResolvedDomain
from phonehome.session.manager import SessionManager
from phonehome.session.models import RunStatus


def _resolver(names: dict[str, str] | None = None) -> MagicMock:
    table = names or {}
    resolver = MagicMock(spec=DomainResolver)
    resolver.resolve.side_effect = lambda ip, timeout=None: table.get(ip)
    resolver.resolve_many.side_effect = lambda ips, timeout=None: {
        ip: table.get(ip) for ip in ips
    }
    resolver.drain_updates.return_value = []
    return resolver


def _manager(
    config: MonitorConfig,
    provider: FakeProvider,
    supervisor: FakeSupervisor,
    **kwargs,
) -> SessionManager:
    kwargs.setdefault("resolver", _resolver())
    kwargs.setdefault("blocker", MagicMock(**{"block.return_value": True}))
    return SessionManager(config, provider, supervisor=supervisor, **kwargs)


class TestNewConnections:
    def test_repeated_key_reported_once(self, fast_config, supervisor):
        k1, k2 = make_key("1.1.1.1"), make_key("2.2.2.2")
        provider = FakeProvider([[(CHILD_PID, k1)], [(CHILD_PID, k1), (CHILD_PID, k2)]])
        supervisor.alive_checks = 3
        manager = _manager(fast_config, provider, supervisor)

        manager.run(["curl", "example.com"])
        session = manager.monitor_loop()

        assert [e.key for e in session.events] == [k1, k2]
        assert session.status is RunStatus.STOPPED
        assert session.exit_code == 0
        assert manager.summary().total_connections == 2

    def test_on_event_called_per_new_connection(self, fast_config, supervisor):
        seen = []
        provider = FakeProvider([[(CHILD_PID, make_key("1.1.1.1"))]])
        supervisor.alive_checks = 2
        manager = _manager(fast_config, provider, supervisor, on_event=seen.append)

        manager.run(["true"])
        manager.monitor_loop()

        assert len(seen) == 1
        assert seen[0].pid == CHILD_PID

    def test_final_tick_runs_after_exit(self, fast_config, supervisor):
        # Child is already gone at the first check, but its sockets are sampled once
        provider = FakeProvider([[(CHILD_PID, make_key())]])
        supervisor.alive_checks = 0
        manager = _manager(fast_config, provider, supervisor)

        manager.run(["true"])
        session = manager.monitor_loop()

        assert len(session.events) == 1
        assert len(provider.calls) == 1

    def test_descendants_are_sampled(self, fast_config, supervisor):
        supervisor.descendants = {5002, 5001}
        supervisor.alive_checks = 1
        provider = FakeProvider()
        manager = _manager(fast_config, provider, supervisor)

        manager.run(["sh", "-c", "curl x & wait"])
        manager.monitor_loop()

        assert provider.calls[0] == [CHILD_PID, 5001, 5002]

    def test_children_excluded_when_disabled(self, fast_config, supervisor):
        config = dataclasses.replace(fast_config, include_children=False)
        supervisor.descendants = {5001}
        supervisor.alive_checks = 1
        provider = FakeProvider()
        manager = _manager(config, provider, supervisor)

        manager.run(["true"])
        manager.monitor_loop()

        assert provider.calls[0] == [CHILD_PID]


class TestPolicyModes:
    def test_exit_first_terminates_on_first_connection(
        self, fast_config, supervisor, blocker
    ):
        config = dataclasses.replace(fast_config, mode=PolicyMode.BLOCK_AND_EXIT)
        provider = FakeProvider(
            [[(CHILD_PID, make_key("93.184.216.34")), (CHILD_PID, make_key("5.5.5.5"))]]
        )
        manager = _manager(config, provider, supervisor, blocker=blocker)

        manager.run(["curl", "https://example.com"])
        session = manager.monitor_loop()

        assert len(session.events) == 1
        event = session.events[0]
        assert event.action is EventAction.BLOCKED
        assert event.remote_ip == "93.184.216.34"
        assert event.resolved_domain is None
        assert supervisor.terminated
        assert session.terminated_by_policy
        assert session.status is RunStatus.TERMINATED
        assert session.exit_code == 143
        blocker.block.assert_called_once_with(event)

        summary = manager.summary()
        assert (summary.total_connections, summary.blocked_connections) == (1, 1)
        assert summary.destinations == (("93.184.216.34", 1),)

    def test_block_and_continue_keeps_running(self, fast_config, supervisor, blocker):
        config = dataclasses.replace(fast_config, mode=PolicyMode.BLOCK_AND_CONTINUE)
        ticks = [[(CHILD_PID, make_key(f"10.0.0.{i}"))] for i in range(5)]
        supervisor.alive_checks = 6
        manager = _manager(config, FakeProvider(ticks), supervisor, blocker=blocker)

        manager.run(["npm", "install"])
        session = manager.monitor_loop()

        assert len(session.events) == 5
        assert all(e.blocked for e in session.events)
        assert not supervisor.terminated
        assert manager.summary().blocked_connections == 5
        blocker.cleanup.assert_called_once()

    def test_observe_never_blocks(self, fast_config, supervisor, blocker):
        ticks = [[(CHILD_PID, make_key(f"10.0.0.{i}")) for i in range(3)]]
        supervisor.alive_checks = 2
        manager = _manager(fast_config, FakeProvider(ticks), supervisor, blocker=blocker)

        manager.run(["true"])
        manager.monitor_loop()

        assert manager.summary().blocked_connections == 0
        blocker.block.assert_not_called()

    def test_block_failure_keeps_loop_running(self, fast_config, supervisor, blocker):
        blocker.block.return_value = False
        config = dataclasses.replace(fast_config, mode=PolicyMode.BLOCK_AND_CONTINUE)
        ticks = [[(CHILD_PID, make_key("1.1.1.1"))], [(CHILD_PID, make_key("2.2.2.2"))]]
        supervisor.alive_checks = 3
        manager = _manager(config, FakeProvider(ticks), supervisor, blocker=blocker)

        manager.run(["true"])
        session = manager.monitor_loop()

        assert len(session.events) == 2
        assert manager.engine.block_failures == 2
        assert session.status is RunStatus.STOPPED

    def test_termination_failure_propagates(self, fast_config, supervisor):
        config = dataclasses.replace(fast_config, mode=PolicyMode.BLOCK_AND_EXIT)
        supervisor.terminate_error = TerminationError("permission denied")
        manager = _manager(config, FakeProvider([[(CHILD_PID, make_key())]]), supervisor)

        manager.run(["true"])
        with pytest.raises(TerminationError):
            manager.monitor_loop()

        session = manager.session
        assert session is not None
        assert len(session.events) == 1
        assert session.status is RunStatus.ERROR
        assert session.end_time is not None


class TestResolution:
    def test_same_domain_aggregated(self, fast_config, supervisor):
        config = dataclasses.replace(fast_config, dns_timeout=2.0)
        ticks = [
            [
                (CHILD_PID, make_key("104.16.24.34")),
                (CHILD_PID, make_key("104.16.25.34")),
            ]
        ]
        supervisor.alive_checks = 2
        manager = SessionManager(
            config,
            FakeProvider(ticks),
            supervisor=supervisor,
            resolver=DomainResolver(timeout=2.0),
        )

        with patch(
            "phonehome.resolve.socket.gethostbyaddr",
            return_value=("registry.npmjs.org", [], []),
        ):
            manager.run(["npm", "install"])
            session = manager.monitor_loop()

        assert all(e.resolved_domain == "registry.npmjs.org" for e in session.events)
        summary = manager.summary()
        assert summary.destinations == (("registry.npmjs.org", 2),)
        assert summary.unique_ips == 2

    def test_slow_dns_costs_one_timeout_per_tick(
        self, fast_config, supervisor, blocker
    ):
        config = dataclasses.replace(
            fast_config, mode=PolicyMode.BLOCK_AND_CONTINUE, dns_timeout=0.25
        )
        ticks = [[(CHILD_PID, make_key(f"203.0.113.{i}")) for i in range(4)]]
        supervisor.alive_checks = 1
        release = threading.Event()
        blocked_at: list[float] = []
        emitted_at: list[float] = []

        def hanging_lookup(ip):
            release.wait(5)
            raise OSError("no ptr")

        def record_block(event):
            blocked_at.append(time.monotonic())
            return True

        blocker.block.side_effect = record_block
        manager = SessionManager(
            config,
            FakeProvider(ticks),
            supervisor=supervisor,
            resolver=DomainResolver(timeout=0.25),
            blocker=blocker,
            on_event=lambda event: emitted_at.append(time.monotonic()),
        )

        with patch(
            "phonehome.resolve.socket.gethostbyaddr", side_effect=hanging_lookup
        ):
            manager.run(["npm", "install"])
            start = time.monotonic()
            session = manager.monitor_loop()
            release.set()

        assert len(session.events) == 4
        assert all(e.resolved_domain is None for e in session.events)
        # Every block lands before the tick waits on DNS
        assert max(blocked_at) - start < 0.1
        # One shared deadline for the tick, not one per connection
        assert max(emitted_at) - start < 0.6

    def test_late_resolution_patches_event_once(self, fast_config, supervisor):
        resolver = _resolver()
        update = ResolvedDomain("9.9.9.9", "dns.quad9.net")
        batches = [[], [update]]
        resolver.drain_updates.side_effect = lambda: batches.pop(0) if batches else []
        resolved = []
        supervisor.alive_checks = 4
        manager = _manager(
            fast_config,
            FakeProvider([[(CHILD_PID, make_key("9.9.9.9"))]]),
            supervisor,
            resolver=resolver,
            on_resolved=resolved.append,
        )

        manager.run(["true"])
        session = manager.monitor_loop()

        assert session.events[0].resolved_domain == "dns.quad9.net"
        assert len(resolved) == 1
        assert manager.summary().destinations == (("dns.quad9.net", 1),)

    def test_late_resolution_does_not_override_existing(self, fast_config, supervisor):
        resolver = _resolver({"9.9.9.9": "first.example"})
        batches = [[], [ResolvedDomain("9.9.9.9", "second.example")]]
        resolver.drain_updates.side_effect = lambda: batches.pop(0) if batches else []
        resolved = []
        supervisor.alive_checks = 4
        manager = _manager(
            fast_config,
            FakeProvider([[(CHILD_PID, make_key("9.9.9.9"))]]),
            supervisor,
            resolver=resolver,
            on_resolved=resolved.append,
        )

        manager.run(["true"])
        session = manager.monitor_loop()

        assert session.events[0].resolved_domain == "first.example"
        assert resolved == []


class TestSamplingFailures:
    def test_consecutive_failures_are_fatal(self, fast_config, supervisor):
        provider = FakeProvider([SamplingError("denied")] * 3)
        manager = _manager(fast_config, provider, supervisor)

        manager.run(["true"])
        with pytest.raises(SamplingFatalError) as exc_info:
            manager.monitor_loop()

        assert exc_info.value.failures == 3
        assert "sudo" in exc_info.value.hint
        assert manager.session is not None
        assert manager.session.status is RunStatus.ERROR

    def test_interleaved_failures_recover(self, fast_config, supervisor):
        err = SamplingError("transient")
        provider = FakeProvider([err, err, [(CHILD_PID, make_key())], err, err, []])
        supervisor.alive_checks = 7
        manager = _manager(fast_config, provider, supervisor)

        manager.run(["true"])
        session = manager.monitor_loop()

        assert session.status is RunStatus.STOPPED
        assert len(session.events) == 1


class TestLifecycle:
    def test_loop_requires_run(self, fast_config, supervisor):
        manager = _manager(fast_config, FakeProvider(), supervisor)
        with pytest.raises(RuntimeError):
            manager.monitor_loop()

    def test_spawn_failure(self, fast_config, supervisor):
        supervisor.spawn_error = SpawnError("No such file: nope")
        manager = _manager(fast_config, FakeProvider(), supervisor)

        with pytest.raises(SpawnError):
            manager.run(["nope"])

        assert manager.session is not None
        assert manager.session.status is RunStatus.ERROR

    def test_stop_from_another_thread(self, fast_config, supervisor):
        supervisor.alive_checks = 10_000
        manager = _manager(fast_config, FakeProvider(), supervisor)
        manager.run(["sleep", "100"])

        timer = threading.Timer(0.05, manager.stop)
        timer.start()
        session = manager.monitor_loop()
        timer.join()

        assert session.status is RunStatus.STOPPED

    def test_terminate_subprocess_only_when_alive(self, fast_config, supervisor):
        supervisor.alive_checks = 1
        manager = _manager(fast_config, FakeProvider(), supervisor)
        manager.run(["true"])
        manager.monitor_loop()

        manager.terminate_subprocess()

        assert supervisor.terminate_calls == 0

    def test_independent_runs_share_nothing(self, fast_config):
        key = make_key()
        results = []
        for _ in range(2):
            supervisor = FakeSupervisor(alive_checks=1)
            manager = _manager(fast_config, FakeProvider([[(CHILD_PID, key)]]), supervisor)
            manager.run(["true"])
            results.append(len(manager.monitor_loop().events))
        assert results == [1, 1]
