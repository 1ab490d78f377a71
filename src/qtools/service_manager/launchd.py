"""launchd backend for the qtools service manager on macOS.

Each service is a LaunchDaemon property list in the ``system`` domain.
Stopping uses ``bootout`` so that ``KeepAlive`` does not respawn the job.
"""

import logging
import plistlib
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..errors import (
    AlreadyRunningError,
    AlreadyStoppedError,
    OperationTimeoutError,
    ServiceNotFoundError,
)
from .backend import ServiceBackend
from .types import ServiceDescriptor, ServiceState, ServiceStatus

logger = logging.getLogger(__name__)

DOMAIN = "system"

# launchctl exit status for "Could not find service ... in domain"
EXIT_NO_SUCH_SERVICE = 113

_STATE_RE = re.compile(r"^\s*state = (.+)$", re.MULTILINE)
_PID_RE = re.compile(r"^\s*pid = (\d+)$", re.MULTILINE)
_EXIT_RE = re.compile(r"^\s*last exit code = (-?\d+)", re.MULTILINE)


def parse_print_output(stdout: str) -> Tuple[ServiceState, Optional[int], Optional[int], str]:
    """Extract state, pid and last exit code from ``launchctl print``.

    Only the first occurrence of each key counts; nested blocks repeat them.
    """
    state_match = _STATE_RE.search(stdout)
    raw_state = state_match.group(1).strip() if state_match else ""
    if raw_state == "running":
        state = ServiceState.RUNNING
    elif raw_state in ("waiting", "not running", "exited", "spawn scheduled"):
        state = ServiceState.STOPPED
    else:
        state = ServiceState.UNKNOWN

    pid_match = _PID_RE.search(stdout)
    exit_match = _EXIT_RE.search(stdout)
    return (
        state,
        int(pid_match.group(1)) if pid_match else None,
        int(exit_match.group(1)) if exit_match else None,
        raw_state,
    )


class LaunchdBackend(ServiceBackend):
    """Manages services as launchd daemons."""

    platform = "launchd"

    def label(self, name: str) -> str:
        return f"{self._constants.launchd_label_prefix}.{name}"

    def service_target(self, name: str) -> str:
        return f"{DOMAIN}/{self.label(name)}"

    def definition_path(self, name: str) -> Path:
        plist_dir = self._definition_dir or self._constants.launchd_dir
        return plist_dir / f"{self.label(name)}.plist"

    def build_plist(self, descriptor: ServiceDescriptor) -> Dict[str, Any]:
        """Build the launchd plist dictionary."""
        plist: Dict[str, Any] = {
            "Label": self.label(descriptor.name),
            "ProgramArguments": descriptor.command,
            "WorkingDirectory": str(descriptor.working_directory),
            "UserName": descriptor.user,
            "GroupName": descriptor.group,
            "EnvironmentVariables": descriptor.environment_map,
            "KeepAlive": descriptor.restart,
            "RunAtLoad": descriptor.enable,
            "ThrottleInterval": max(1, int(round(descriptor.restart_delay_seconds))),
            "ExitTimeOut": int(self._constants.stop_grace_seconds),
        }
        if descriptor.log_path is not None:
            plist["StandardOutPath"] = str(descriptor.log_path)
            plist["StandardErrorPath"] = str(descriptor.log_path)
        return plist

    def render_definition(self, descriptor: ServiceDescriptor) -> bytes:
        return plistlib.dumps(self.build_plist(descriptor), sort_keys=True)

    async def _print(self, name: str) -> Tuple[bool, ServiceStatus]:
        """Return (loaded, status) for a service."""
        if not self.definition_path(name).exists():
            raise ServiceNotFoundError(f"No plist for {name} at {self.definition_path(name)}", target=name)

        result = await self._run("launchctl", "print", self.service_target(name))
        if result.exit_code == EXIT_NO_SUCH_SERVICE or (
            not result.ok and "could not find service" in result.stderr.lower()
        ):
            return False, ServiceStatus(name=name, state=ServiceState.STOPPED, detail="not loaded")
        if not result.ok:
            raise self._classify(result, name)

        state, pid, exit_code, raw_state = parse_print_output(result.stdout)
        return True, ServiceStatus(
            name=name,
            state=state,
            pid=pid if state == ServiceState.RUNNING else None,
            exit_code=exit_code,
            detail=raw_state or None,
        )

    async def status(self, name: str) -> ServiceStatus:
        _, current = await self._print(name)
        return current

    async def start(self, name: str) -> None:
        loaded, current = await self._print(name)
        if current.is_running:
            raise AlreadyRunningError(f"{name} is already running (pid {current.pid})", target=name)

        if loaded:
            logger.info(f"Kickstarting {self.label(name)}")
            result = await self._run("launchctl", "kickstart", self.service_target(name))
        else:
            logger.info(f"Bootstrapping {self.label(name)}")
            result = await self._run(
                "launchctl", "bootstrap", DOMAIN, str(self.definition_path(name))
            )
        if not result.ok:
            raise self._classify(result, name)

    async def stop(self, name: str, force: bool = False, grace: Optional[float] = None) -> None:
        loaded, current = await self._print(name)
        if not loaded:
            raise AlreadyStoppedError(f"{name} is not loaded", target=name)

        grace = grace if grace is not None else self._constants.stop_grace_seconds
        logger.info(f"Booting out {self.label(name)} (grace {grace}s, force={force})")
        result = await self._run("launchctl", "bootout", self.service_target(name), timeout=grace)

        if result.timed_out and force:
            logger.warning(f"{name} did not stop within {grace}s, sending SIGKILL")
            kill = await self._run(
                "launchctl", "kill", "SIGKILL", self.service_target(name),
                timeout=self._constants.force_stop_timeout,
            )
            if not kill.ok and kill.exit_code != EXIT_NO_SUCH_SERVICE:
                raise self._classify(kill, name)
            retry = await self._run(
                "launchctl", "bootout", self.service_target(name),
                timeout=self._constants.force_stop_timeout,
            )
            if not retry.ok and retry.exit_code != EXIT_NO_SUCH_SERVICE:
                raise self._classify(retry, name)
            return

        if result.timed_out:
            raise OperationTimeoutError(f"{name} did not stop within {grace}s", target=name)
        if not result.ok and result.exit_code != EXIT_NO_SUCH_SERVICE:
            raise self._classify(result, name)

    async def reload(self) -> None:
        # launchd reads the plist at bootstrap time; loaded jobs pick up a
        # rewritten definition on their next stop/start cycle
        logger.debug("launchd has no daemon-reload; definitions apply on next bootstrap")

    async def remove_definition(self, name: str) -> None:
        if self.definition_path(name).exists():
            result = await self._run("launchctl", "bootout", self.service_target(name))
            if not result.ok and result.exit_code != EXIT_NO_SUCH_SERVICE:
                logger.warning(f"bootout of {name} before removal failed: {result.stderr.strip()}")
        await super().remove_definition(name)
