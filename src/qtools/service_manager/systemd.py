"""systemd backend for the qtools service manager.

Writes one unit file per service and drives it with ``systemctl``.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from ..errors import (
    AlreadyRunningError,
    AlreadyStoppedError,
    DefinitionWriteError,
    OperationTimeoutError,
    ServiceNotFoundError,
)
from .backend import ServiceBackend
from .types import ServiceDescriptor, ServiceState, ServiceStatus

logger = logging.getLogger(__name__)

_STATUS_PROPERTIES = "LoadState,ActiveState,SubState,MainPID,ExecMainStatus"
_RUNNING_STATES = {"active", "reloading", "activating", "deactivating"}
_STOPPED_STATES = {"inactive", "failed"}


def format_seconds(seconds: float) -> str:
    """``5.0`` -> ``5s``, ``2.5`` -> ``2.5s``."""
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{seconds:g}s"


def _check_line(value: str, name: str) -> str:
    if "\n" in value or "\r" in value:
        raise DefinitionWriteError(f"Line break in unit value for {name}: {value!r}", target=name)
    return value


def _escape_value(value: str) -> str:
    """Escape a value for a double-quoted unit setting; ``%`` is a specifier prefix."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")


def _quote_arg(arg: str) -> str:
    # ExecStart also expands $VAR
    if arg and not any(c in arg for c in ' \t"\\%$'):
        return arg
    return f'"{_escape_value(arg).replace("$", "$$")}"'


def parse_show_output(stdout: str) -> Dict[str, str]:
    """Parse ``systemctl show`` ``Key=Value`` lines."""
    properties: Dict[str, str] = {}
    for line in stdout.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            properties[key.strip()] = value.strip()
    return properties


class SystemdBackend(ServiceBackend):
    """Manages services as systemd units."""

    platform = "systemd"

    def unit_name(self, name: str) -> str:
        return f"{name}.service"

    def definition_path(self, name: str) -> Path:
        unit_dir = self._definition_dir or self._constants.systemd_unit_dir
        return unit_dir / self.unit_name(name)

    def render_definition(self, descriptor: ServiceDescriptor) -> bytes:
        lines = [
            "[Unit]",
            f"Description={descriptor.description or descriptor.name}",
            "After=network-online.target",
            "Wants=network-online.target",
            "",
            "[Service]",
            "Type=simple",
            f"User={descriptor.user}",
            f"Group={descriptor.group}",
            f"WorkingDirectory={str(descriptor.working_directory).replace('%', '%%')}",
        ]
        for key, value in sorted(descriptor.environment):
            _check_line(f"{key}={value}", descriptor.name)
            lines.append(f'Environment="{_escape_value(key)}={_escape_value(value)}"')
        command = [_check_line(a, descriptor.name) for a in descriptor.command]
        lines.extend(
            [
                f"ExecStart={' '.join(_quote_arg(a) for a in command)}",
                f"Restart={'always' if descriptor.restart else 'no'}",
                f"RestartSec={format_seconds(descriptor.restart_delay_seconds)}",
                "KillSignal=SIGINT",
                f"TimeoutStopSec={format_seconds(self._constants.stop_grace_seconds)}",
                "",
                "[Install]",
                "WantedBy=multi-user.target",
                "",
            ]
        )
        return "\n".join(lines).encode("utf-8")

    async def status(self, name: str) -> ServiceStatus:
        result = await self._run(
            "systemctl", "show", self.unit_name(name), f"--property={_STATUS_PROPERTIES}", "--no-pager"
        )
        if not result.ok:
            raise self._classify(result, name)

        props = parse_show_output(result.stdout)
        if props.get("LoadState") == "not-found":
            raise ServiceNotFoundError(f"Unit {self.unit_name(name)} not found", target=name)

        active = props.get("ActiveState", "")
        sub = props.get("SubState", "")
        if active == "activating" and sub == "auto-restart":
            state = ServiceState.STOPPED
        elif active in _RUNNING_STATES:
            state = ServiceState.RUNNING
        elif active in _STOPPED_STATES:
            state = ServiceState.STOPPED
        else:
            state = ServiceState.UNKNOWN

        pid: Optional[int] = None
        try:
            main_pid = int(props.get("MainPID", "0"))
            pid = main_pid if main_pid > 0 else None
        except ValueError:
            pass

        exit_code: Optional[int] = None
        try:
            exit_code = int(props["ExecMainStatus"]) if "ExecMainStatus" in props else None
        except ValueError:
            pass

        return ServiceStatus(
            name=name,
            state=state,
            pid=pid if state == ServiceState.RUNNING else None,
            exit_code=exit_code,
            detail=f"{active} ({sub})" if sub else active or None,
        )

    async def start(self, name: str) -> None:
        current = await self.status(name)
        if current.is_running:
            raise AlreadyRunningError(f"{name} is already running (pid {current.pid})", target=name)

        logger.info(f"Starting {self.unit_name(name)}")
        result = await self._run("systemctl", "start", self.unit_name(name))
        if not result.ok:
            raise self._classify(result, name)

    async def stop(self, name: str, force: bool = False, grace: Optional[float] = None) -> None:
        current = await self.status(name)
        if current.state == ServiceState.STOPPED:
            raise AlreadyStoppedError(f"{name} is already stopped", target=name)

        grace = grace if grace is not None else self._constants.stop_grace_seconds
        logger.info(f"Stopping {self.unit_name(name)} (grace {grace}s, force={force})")
        result = await self._run("systemctl", "stop", self.unit_name(name), timeout=grace)

        if result.timed_out and force:
            logger.warning(f"{name} did not stop within {grace}s, sending SIGKILL")
            kill = await self._run(
                "systemctl", "kill", "--signal=SIGKILL", self.unit_name(name),
                timeout=self._constants.force_stop_timeout,
            )
            if not kill.ok:
                raise self._classify(kill, name)
            return

        if result.timed_out:
            raise OperationTimeoutError(f"{name} did not stop within {grace}s", target=name)
        if not result.ok:
            raise self._classify(result, name)

    async def reload(self) -> None:
        result = await self._run("systemctl", "daemon-reload")
        if not result.ok:
            raise self._classify(result, "daemon-reload")

    async def set_enabled(self, name: str, enabled: bool) -> None:
        verb = "enable" if enabled else "disable"
        result = await self._run("systemctl", verb, self.unit_name(name))
        if not result.ok:
            raise self._classify(result, name)

    async def remove_definition(self, name: str) -> None:
        if self.definition_path(name).exists():
            await self.set_enabled(name, False)
        await super().remove_definition(name)
