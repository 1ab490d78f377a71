# noqa: D104
"""Pytest fixtures for qtools tests."""

from __future__ import annotations

from typing import List

import pytest

from qtools.cluster.types import ClusterServer
from qtools.config import ServiceConstants, ServiceOptions

from .fakes import FakeBackend, FakeChannel


@pytest.fixture
def constants() -> ServiceConstants:
    """Constants with short grace periods."""
    return ServiceConstants(stop_grace_seconds=0.5, force_stop_timeout=0.2)


@pytest.fixture
def options() -> ServiceOptions:
    return ServiceOptions()


@pytest.fixture
def backend(constants: ServiceConstants) -> FakeBackend:
    return FakeBackend(constants=constants)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def servers() -> List[ClusterServer]:
    """Three cluster servers with two workers each."""
    return [
        ClusterServer(host="10.0.0.1", worker_count=2),
        ClusterServer(host="10.0.0.2", worker_count=2),
        ClusterServer(host="10.0.0.3", worker_count=2),
    ]
