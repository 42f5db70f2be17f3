"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fakes import FakeSupervisor

from phonehome.config import MonitorConfig
from phonehome.policy.models import PolicyMode


@pytest.fixture
def fast_config() -> MonitorConfig:
    return MonitorConfig(
        mode=PolicyMode.OBSERVE,
        poll_interval=0.01,
        dns_timeout=0.05,
        startup_delay=0,
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def blocker() -> MagicMock:
    mock = MagicMock()
    mock.block.return_value = True
    return mock
