"""Type definitions for cluster fan-out.

Defines the static server identity supplied by configuration and the
per-server results the coordinator reports.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorCode


class ClusterServer(BaseModel):
    """One statically configured cluster member.

    Identity fields are owned by configuration. Reachability is tracked by
    the ClusterCoordinator, not stored here.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    user: str = "quilibrium"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_key: Optional[Path] = None
    worker_count: Optional[int] = Field(default=None, ge=0)
    cores: Optional[str] = None

    @property
    def server_id(self) -> str:
        """Stable identifier used as the key of fan-out results."""
        return f"{self.user}@{self.host}:{self.ssh_port}"


@dataclass
class RemoteResult:
    """Structured result of one remote command."""

    stdout: str
    stderr: str
    exit_code: int


@dataclass
class ServerResult:
    """Outcome of a cluster operation on a single server.

    Attributes:
        server_id: ``user@host:port`` of the target
        ok: Whether the remote command ran and exited zero
        error_code: Taxonomy code when ``ok`` is False
        exit_code: Remote exit status, if the command ran
        stdout: Captured standard output
        stderr: Captured standard error
        detail: Human-readable explanation
        duration_seconds: Wall time spent on this server
    """

    server_id: str
    ok: bool
    error_code: Optional[ErrorCode] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    detail: Optional[str] = None
    duration_seconds: float = 0.0
    finished_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.finished_at is None:
            self.finished_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "server": self.server_id,
            "ok": self.ok,
            "error": self.error_code.value if self.error_code else None,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "detail": self.detail,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def summarize(results: Mapping[str, ServerResult]) -> Dict[str, int]:
    """Count per-server outcomes for reporting."""
    summary = {"total": len(results), "succeeded": 0, "failed": 0, "unreachable": 0, "cancelled": 0}
    for result in results.values():
        if result.ok:
            summary["succeeded"] += 1
            continue
        summary["failed"] += 1
        if result.error_code == ErrorCode.UNREACHABLE:
            summary["unreachable"] += 1
        elif result.error_code == ErrorCode.CANCELLED:
            summary["cancelled"] += 1
    return summary


__all__ = ["ClusterServer", "RemoteResult", "ServerResult", "summarize"]
