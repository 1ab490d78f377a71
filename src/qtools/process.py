# noqa: D401
"""Subprocess execution for service-control commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

# Exit status used when the binary itself cannot be launched (shell convention)
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126


@dataclass
class CommandResult:
    """Structured result of one command execution."""

    argv: Sequence[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def command(self) -> str:
        return " ".join(self.argv)


class ProcessRunner:
    """Run commands with a bounded timeout and capture their output."""

    def __init__(self, default_timeout: float = 30.0, use_sudo: bool = False) -> None:
        """Initialize runner.

        Args:
            default_timeout: Timeout applied when a call passes none
            use_sudo: Prefix every command with ``sudo -n``
        """
        self.default_timeout = default_timeout
        self.use_sudo = use_sudo

    async def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input: Optional[bytes] = None,
    ) -> CommandResult:
        """Execute ``argv`` and wait for it, killing it on timeout."""
        cmd = ["sudo", "-n", *argv] if self.use_sudo else list(argv)
        timeout_sec = timeout if timeout is not None else self.default_timeout
        logger.debug(f"Running: {' '.join(cmd)} (timeout {timeout_sec}s)")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=cmd, exit_code=EXIT_NOT_FOUND, stdout="", stderr=str(e))
        except PermissionError as e:
            return CommandResult(argv=cmd, exit_code=EXIT_CANNOT_EXECUTE, stdout="", stderr=str(e))
        except OSError as e:
            logger.warning(f"Cannot launch {cmd[0]}: {e}")
            return CommandResult(argv=cmd, exit_code=-1, stdout="", stderr=f"Cannot launch {cmd[0]}: {e}")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(input=input), timeout=timeout_sec
            )
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.warning(f"Command exceeded timeout of {timeout_sec}s: {' '.join(cmd)}")
            return CommandResult(
                argv=cmd,
                exit_code=-1,
                stdout="",
                stderr=f"Command exceeded timeout of {timeout_sec}s",
                timed_out=True,
            )
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        return CommandResult(
            argv=cmd,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


__all__ = ["CommandResult", "EXIT_CANNOT_EXECUTE", "EXIT_NOT_FOUND", "ProcessRunner"]
