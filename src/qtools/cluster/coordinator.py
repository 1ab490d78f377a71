# noqa: D401
"""Cluster coordinator: concurrent fan-out of node operations to servers."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..cores import allocate_cluster_cores, format_core_spec
from ..errors import ErrorCode, OperationCancelledError, QtoolsError, UnreachableError
from ..logging import get_logger
from .remote import RemoteChannel, SSHChannel
from .types import ClusterServer, ServerResult

logger = get_logger(__name__)

PROBE_COMMAND = "echo OK"


@dataclass(frozen=True)
class ClusterOperation:
    """A node operation expressed as the ``qtools`` command run on each server."""

    name: str
    args: Tuple[str, ...] = ()
    with_cores: bool = True
    executable: str = "qtools"

    def command_for(self, cores: Sequence[int]) -> str:
        parts: List[str] = [self.executable, self.name, *self.args]
        if self.with_cores and cores:
            parts.extend(["--cores", format_core_spec(cores)])
        return shlex.join(parts)

    @classmethod
    def start(cls, master: bool = False) -> "ClusterOperation":
        return cls("start", () if master else ("--workers-only",))

    @classmethod
    def stop(cls, force: bool = False, master: bool = False) -> "ClusterOperation":
        args: Tuple[str, ...] = () if master else ("--workers-only",)
        return cls("stop", args + (("--force",) if force else ()))

    @classmethod
    def restart(cls) -> "ClusterOperation":
        return cls("restart", ("--workers-only",))

    @classmethod
    def status(cls) -> "ClusterOperation":
        return cls("status", ("--json",))


def dedupe_servers(servers: Iterable[ClusterServer]) -> List[ClusterServer]:
    """Collapse repeated server entries to their first occurrence."""
    seen = set()
    unique: List[ClusterServer] = []
    for server in servers:
        if server.server_id in seen:
            logger.warning("duplicate_server_ignored", server=server.server_id)
            continue
        seen.add(server.server_id)
        unique.append(server)
    return unique


@dataclass
class _ServerState:
    reachable: Optional[bool] = None
    cores: List[int] = field(default_factory=list)


class ClusterCoordinator:
    """Fans node operations out to a static list of cluster servers.

    Servers are contacted concurrently, each under its own timeout; results
    are always reported per server and never collapsed to one flag.
    """

    def __init__(
        self,
        servers: Sequence[ClusterServer],
        channel: Optional[RemoteChannel] = None,
        operation_timeout: float = 60.0,
        probe_timeout: float = 10.0,
        default_worker_count: int = 0,
    ) -> None:
        """Initialize the coordinator.

        Args:
            servers: Operator-maintained server list, in order.
            channel: Remote execution channel (SSH by default).
            operation_timeout: Per-server timeout for an operation.
            probe_timeout: Timeout for a reachability probe.
            default_worker_count: Workers for servers without a count.
        """
        self._servers = dedupe_servers(servers)
        self._channel = channel or SSHChannel(connect_timeout=max(1, int(probe_timeout)))
        self.operation_timeout = operation_timeout
        self.probe_timeout = probe_timeout

        allocation = allocate_cluster_cores(self._servers, default_worker_count)
        self._state: Dict[str, _ServerState] = {
            server.server_id: _ServerState(cores=allocation[server.server_id])
            for server in self._servers
        }

    @property
    def servers(self) -> List[ClusterServer]:
        return list(self._servers)

    def is_reachable(self, server: ClusterServer) -> Optional[bool]:
        """Result of the latest probe, or None if never probed."""
        state = self._state.get(server.server_id)
        return state.reachable if state else None

    def cores_for(self, server: ClusterServer) -> List[int]:
        state = self._state.get(server.server_id)
        return list(state.cores) if state else []

    def _mark(self, server: ClusterServer, reachable: bool) -> None:
        state = self._state.setdefault(server.server_id, _ServerState())
        state.reachable = reachable

    async def _probe(self, server: ClusterServer) -> Optional[Tuple[ErrorCode, str]]:
        """Run the probe and return the failure's code and detail, or None if reachable."""
        log = logger.bind(server=server.server_id)
        failure: Optional[Tuple[ErrorCode, str]] = None
        try:
            result = await asyncio.wait_for(
                self._channel.execute(server, PROBE_COMMAND, self.probe_timeout),
                timeout=self.probe_timeout,
            )
            if result.exit_code != 0 or "OK" not in result.stdout:
                failure = (ErrorCode.UNREACHABLE, f"Probe exited {result.exit_code}")
        except asyncio.TimeoutError:
            failure = (ErrorCode.UNREACHABLE, f"Probe timed out after {self.probe_timeout}s")
            log.warning("probe_timeout", timeout=self.probe_timeout)
        except QtoolsError as e:
            failure = (e.code, str(e))
            log.warning("probe_failed", error=e.code.value, detail=str(e))
        except Exception as e:
            failure = (ErrorCode.UNREACHABLE, f"{type(e).__name__}: {e}")
            log.warning("probe_error", error=type(e).__name__, detail=str(e))

        self._mark(server, failure is None)
        log.debug("probe_complete", reachable=failure is None)
        return failure

    async def probe_reachability(self, server: ClusterServer) -> bool:
        """Lightweight connectivity check; updates the server's reachability."""
        return await self._probe(server) is None

    async def probe_all(self, servers: Optional[Sequence[ClusterServer]] = None) -> Dict[str, bool]:
        targets = dedupe_servers(servers if servers is not None else self._servers)
        flags = await asyncio.gather(*(self.probe_reachability(s) for s in targets))
        return {s.server_id: flag for s, flag in zip(targets, flags)}

    async def _run_on(
        self,
        server: ClusterServer,
        operation: ClusterOperation,
        timeout: float,
        probe: bool,
    ) -> ServerResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        log = logger.bind(operation=operation.name, server=server.server_id)

        def elapsed() -> float:
            return loop.time() - started

        if probe:
            failure = await self._probe(server)
            if failure is not None:
                code, detail = failure
                log.warning("server_unreachable", error=code.value)
                return ServerResult(
                    server_id=server.server_id,
                    ok=False,
                    error_code=code,
                    detail=detail,
                    duration_seconds=elapsed(),
                )

        command = operation.command_for(self.cores_for(server))
        log.info("dispatch", command=command)
        try:
            remote = await asyncio.wait_for(
                self._channel.execute(server, command, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            log.warning("operation_timeout", timeout=timeout)
            return ServerResult(
                server_id=server.server_id,
                ok=False,
                error_code=ErrorCode.TIMEOUT,
                detail=f"No result within {timeout}s",
                duration_seconds=elapsed(),
            )
        except UnreachableError as e:
            self._mark(server, False)
            log.warning("server_unreachable", detail=str(e))
            return ServerResult(
                server_id=server.server_id,
                ok=False,
                error_code=e.code,
                detail=str(e),
                duration_seconds=elapsed(),
            )
        except QtoolsError as e:
            log.warning("operation_failed", error=e.code.value, detail=str(e))
            return ServerResult(
                server_id=server.server_id,
                ok=False,
                error_code=e.code,
                detail=str(e),
                duration_seconds=elapsed(),
            )
        except Exception as e:
            log.warning("operation_error", error=type(e).__name__, detail=str(e))
            return ServerResult(
                server_id=server.server_id,
                ok=False,
                error_code=ErrorCode.COMMAND_FAILED,
                detail=f"{type(e).__name__}: {e}",
                duration_seconds=elapsed(),
            )

        ok = remote.exit_code == 0
        if ok:
            log.info("operation_complete", duration=round(elapsed(), 3))
        else:
            log.warning("operation_failed", exit_code=remote.exit_code)
        return ServerResult(
            server_id=server.server_id,
            ok=ok,
            error_code=None if ok else ErrorCode.COMMAND_FAILED,
            exit_code=remote.exit_code,
            stdout=remote.stdout,
            stderr=remote.stderr,
            detail=None if ok else f"Remote command exited {remote.exit_code}",
            duration_seconds=elapsed(),
        )

    async def fan_out(
        self,
        servers: Optional[Sequence[ClusterServer]],
        operation: ClusterOperation,
        timeout: Optional[float] = None,
        probe: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, ServerResult]:
        """Run ``operation`` on every server concurrently.

        Args:
            servers: Targets (None for all configured servers).
            operation: What to run on each server.
            timeout: Per-server operation timeout.
            probe: Probe reachability first and skip unreachable servers.
            cancel_event: When set, servers still in flight are abandoned and
                reported as cancelled.

        Returns:
            Mapping of server id to its result, in server order.
        """
        targets = dedupe_servers(servers if servers is not None else self._servers)
        timeout = timeout if timeout is not None else self.operation_timeout
        logger.info("fan_out", operation=operation.name, servers=len(targets))

        tasks: Dict[asyncio.Task, ClusterServer] = {
            asyncio.create_task(self._run_on(server, operation, timeout, probe)): server
            for server in targets
        }
        results: Dict[str, ServerResult] = {}
        pending = set(tasks)
        cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event else None

        try:
            while pending:
                waiting = set(pending)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is cancel_waiter:
                        continue
                    pending.discard(task)
                    results[tasks[task].server_id] = task.result()
                if cancel_waiter is not None and cancel_waiter.done():
                    break
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            for task in pending:
                task.cancel()

        if pending:
            logger.warning("fan_out_cancelled", operation=operation.name, abandoned=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                server_id = tasks[task].server_id
                error = OperationCancelledError("Cancelled before completion", target=server_id)
                results[server_id] = ServerResult(
                    server_id=server_id, ok=False, error_code=error.code, detail=str(error)
                )

        return {server.server_id: results[server.server_id] for server in targets}


__all__ = ["ClusterCoordinator", "ClusterOperation", "dedupe_servers"]
