"""Type definitions for the qtools service manager.

This module defines the core data structures for service management:
service descriptors, status snapshots, and aggregate results of bulk
lifecycle operations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ErrorCode


class ServiceRole(Enum):
    """Which part of the node a service runs."""

    MASTER = "master"
    WORKER = "worker"


class ServiceState(Enum):
    """Tri-state run status reported by a backend."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ServiceDescriptor:
    """Definition of one manageable service.

    Descriptors are derived values: they are regenerated from options,
    constants and core index whenever needed and never patched in place.

    Attributes:
        name: Unique service name on the host (unit / label suffix)
        role: Master or worker
        core: Core index for workers, None for the master
        executable: Binary to run
        arguments: Command-line arguments after the executable
        working_directory: Directory the process starts in
        user: Owning account
        group: Owning group
        environment: Environment variables, emitted in sorted order
        restart: Whether the init system restarts the process on exit
        restart_delay_seconds: Delay before a restart
        enable: Whether the service starts at boot
        log_path: Combined stdout/stderr log file (launchd only)
    """

    name: str
    role: ServiceRole
    executable: Path
    working_directory: Path
    user: str
    group: str
    core: Optional[int] = None
    arguments: Tuple[str, ...] = ()
    environment: Tuple[Tuple[str, str], ...] = ()
    restart: bool = True
    restart_delay_seconds: float = 5.0
    enable: bool = True
    log_path: Optional[Path] = None
    description: str = ""

    @property
    def command(self) -> List[str]:
        """Full argv of the service process."""
        return [str(self.executable), *self.arguments]

    @property
    def environment_map(self) -> Dict[str, str]:
        return dict(self.environment)


@dataclass
class ServiceStatus:
    """Point-in-time status of a service. Never cached across queries.

    Attributes:
        name: Service name
        state: running / stopped / unknown
        pid: Main process ID when running
        exit_code: Last exit status, if the init system reports one
        detail: Human-readable detail line
    """

    name: str
    state: ServiceState
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    detail: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_running(self) -> bool:
        return self.state == ServiceState.RUNNING

    @classmethod
    def unknown(cls, name: str, detail: Optional[str] = None) -> "ServiceStatus":
        return cls(name=name, state=ServiceState.UNKNOWN, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "detail": self.detail,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class ItemOutcome:
    """Result of one lifecycle operation on one service."""

    target: str
    ok: bool
    core: Optional[int] = None
    error_code: Optional[ErrorCode] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "core": self.core,
            "ok": self.ok,
            "error": self.error_code.value if self.error_code else None,
            "detail": self.detail,
        }


@dataclass
class AggregateResult:
    """Per-item outcomes of a bulk operation, in attempt order.

    ``ok`` is True only when every attempted item succeeded; the individual
    outcomes are always available regardless.
    """

    operation: str
    outcomes: List[ItemOutcome] = field(default_factory=list)

    def add(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)

    def extend(self, other: "AggregateResult") -> None:
        self.outcomes.extend(other.outcomes)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def succeeded(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def for_target(self, target: str) -> Optional[ItemOutcome]:
        for outcome in self.outcomes:
            if outcome.target == target:
                return outcome
        return None

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "operation": self.operation,
            "ok": self.ok,
            "summary": self.summary(),
            "items": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class FleetStatus:
    """Master status plus one status per configured worker core."""

    master: ServiceStatus
    workers: Dict[int, ServiceStatus] = field(default_factory=dict)

    def summary(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ServiceState}
        for status in [self.master, *self.workers.values()]:
            counts[status.state.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master": self.master.to_dict(),
            "workers": {str(core): s.to_dict() for core, s in self.workers.items()},
            "summary": self.summary(),
        }
