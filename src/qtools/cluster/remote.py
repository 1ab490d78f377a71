# noqa: D401
"""Remote execution channel for cluster servers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from ..errors import AuthFailedError, OperationTimeoutError, UnreachableError
from ..process import EXIT_NOT_FOUND, ProcessRunner
from .types import ClusterServer, RemoteResult

logger = logging.getLogger(__name__)

SSH_OPTIONS = [
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=accept-new",
    "-o",
    "ServerAliveInterval=15",
    "-o",
    "ServerAliveCountMax=2",
]

# ssh exits 255 when the connection itself fails
SSH_CONNECTION_FAILED = 255

_AUTH_MARKERS = ("permission denied", "authentication failed", "too many authentication failures")


class RemoteChannel(ABC):
    """Executes a shell command on a cluster server."""

    @abstractmethod
    async def execute(self, server: ClusterServer, command: str, timeout: float) -> RemoteResult:
        """Run ``command`` on ``server``.

        Raises:
            UnreachableError: The server could not be contacted
            AuthFailedError: The server rejected our credentials
            OperationTimeoutError: No result within ``timeout``
        """


class SSHChannel(RemoteChannel):
    """Remote execution through the OpenSSH client."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        connect_timeout: int = 10,
        ssh_binary: str = "ssh",
    ) -> None:
        self._runner = runner or ProcessRunner()
        self.connect_timeout = connect_timeout
        self.ssh_binary = ssh_binary

    def build_command(self, server: ClusterServer, command: str) -> List[str]:
        """Build SSH command list."""
        cmd = [self.ssh_binary]
        cmd.extend(SSH_OPTIONS)
        cmd.extend(["-o", f"ConnectTimeout={self.connect_timeout}"])
        cmd.extend(["-p", str(server.ssh_port)])
        if server.ssh_key is not None:
            cmd.extend(["-i", str(Path(server.ssh_key).expanduser())])
        cmd.append(f"{server.user}@{server.host}")
        cmd.append(command)
        return cmd

    async def execute(self, server: ClusterServer, command: str, timeout: float) -> RemoteResult:
        argv = self.build_command(server, command)
        result = await self._runner.run(argv, timeout=timeout)

        if result.timed_out:
            raise OperationTimeoutError(
                f"{server.server_id}: no result within {timeout}s", target=server.server_id
            )
        if result.exit_code == EXIT_NOT_FOUND and not result.stdout:
            raise UnreachableError(
                f"ssh client not available: {result.stderr.strip()}", target=server.server_id
            )
        if result.exit_code == SSH_CONNECTION_FAILED:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in _AUTH_MARKERS):
                raise AuthFailedError(f"{server.server_id}: {stderr}", target=server.server_id)
            raise UnreachableError(f"{server.server_id}: {stderr}", target=server.server_id)

        return RemoteResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code)


__all__ = ["RemoteChannel", "SSHChannel", "SSH_OPTIONS"]
