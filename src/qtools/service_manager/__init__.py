"""qtools service manager - master/worker lifecycle on one host.

This module drives the node's master and per-core worker services through
the host init system:
- Generates service definitions (systemd units or launchd plists)
- Starts the master before workers and stops workers before the master
- Reports per-item outcomes for every bulk operation

Usage:
    from qtools.service_manager import WorkerManager, get_backend

    manager = WorkerManager(get_backend(), options, cores=[1, 2, 3])
    result = await manager.start_all()
    status = await manager.status()
"""

from .backend import ServiceBackend, atomic_write
from .descriptors import DescriptorFactory
from .launchd import LaunchdBackend
from .platform import detect_platform, get_backend, reset_backend, select_backend
from .systemd import SystemdBackend
from .types import (
    AggregateResult,
    FleetStatus,
    ItemOutcome,
    ServiceDescriptor,
    ServiceRole,
    ServiceState,
    ServiceStatus,
)
from .workers import WorkerManager

__all__ = [
    # Main classes
    "WorkerManager",
    "DescriptorFactory",
    "ServiceBackend",
    "SystemdBackend",
    "LaunchdBackend",
    # Type classes
    "AggregateResult",
    "FleetStatus",
    "ItemOutcome",
    "ServiceDescriptor",
    "ServiceRole",
    "ServiceState",
    "ServiceStatus",
    # Backend selection
    "detect_platform",
    "select_backend",
    "get_backend",
    "reset_backend",
    "atomic_write",
]
