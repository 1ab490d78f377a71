"""Service backend interface for the qtools service manager.

A backend performs lifecycle operations for named services against the
host init system and persists service definitions. Exactly one backend is
selected per process (see ``platform.py``) and injected everywhere.
"""

import contextlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..config import ServiceConstants
from ..errors import (
    AlreadyStoppedError,
    CommandFailedError,
    DefinitionWriteError,
    OperationTimeoutError,
    PermissionDeniedError,
    PlatformUnsupportedError,
    QtoolsError,
    ServiceNotFoundError,
)
from ..process import EXIT_CANNOT_EXECUTE, EXIT_NOT_FOUND, CommandResult, ProcessRunner
from .types import ServiceDescriptor, ServiceStatus

logger = logging.getLogger(__name__)

DEFINITION_MODE = 0o644


def atomic_write(path: Path, content: bytes, mode: int = DEFINITION_MODE) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory and rename.

    Readers see either the old file or the new one, never a partial write.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot write {path}: {e}", target=str(path))
    except OSError as e:
        raise DefinitionWriteError(f"Cannot write {path}: {e}", target=str(path))

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except PermissionError as e:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise PermissionDeniedError(f"Cannot write {path}: {e}", target=str(path))
    except OSError as e:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise DefinitionWriteError(f"Cannot write {path}: {e}", target=str(path))


class ServiceBackend(ABC):
    """Lifecycle capability set for named services on one init system."""

    platform: str = ""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        constants: Optional[ServiceConstants] = None,
        definition_dir: Optional[Path] = None,
    ) -> None:
        """Initialize the backend.

        Args:
            runner: ProcessRunner used for every init-system call.
            constants: Service constants (paths, grace periods).
            definition_dir: Override for where definitions are written.
        """
        self._runner = runner or ProcessRunner()
        self._constants = constants or ServiceConstants()
        self._definition_dir = definition_dir

    @property
    def constants(self) -> ServiceConstants:
        return self._constants

    # -- lifecycle -------------------------------------------------------

    @abstractmethod
    async def start(self, name: str) -> None:
        """Start a service; AlreadyRunningError when it is already up."""

    @abstractmethod
    async def stop(self, name: str, force: bool = False, grace: Optional[float] = None) -> None:
        """Stop a service, escalating to a hard kill after ``grace`` when forced."""

    async def restart(self, name: str) -> None:
        """Stop then start with the same grace semantics.

        A stopped service is simply started; a start failure always propagates.
        """
        try:
            await self.stop(name)
        except AlreadyStoppedError:
            logger.info(f"{name} was not running, starting it")
        await self.start(name)

    @abstractmethod
    async def status(self, name: str) -> ServiceStatus:
        """Fresh status snapshot for a service."""

    # -- definitions -----------------------------------------------------

    @abstractmethod
    def definition_path(self, name: str) -> Path:
        """Where the persisted definition for ``name`` lives."""

    @abstractmethod
    def render_definition(self, descriptor: ServiceDescriptor) -> bytes:
        """Render the full definition file. Deterministic for equal descriptors."""

    async def write_definition(self, descriptor: ServiceDescriptor) -> Path:
        """Fully regenerate and atomically rewrite a service definition."""
        path = self.definition_path(descriptor.name)
        content = self.render_definition(descriptor)
        atomic_write(path, content)
        logger.info(f"Wrote {self.platform} definition for {descriptor.name} to {path}")
        return path

    async def remove_definition(self, name: str) -> None:
        """Delete a persisted definition if present."""
        path = self.definition_path(name)
        try:
            path.unlink(missing_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot remove {path}: {e}", target=name)
        except OSError as e:
            raise DefinitionWriteError(f"Cannot remove {path}: {e}", target=name)
        logger.info(f"Removed definition for {name}")

    async def reload(self) -> None:
        """Make the init system pick up rewritten definitions."""

    async def set_enabled(self, name: str, enabled: bool) -> None:
        """Toggle start-at-boot where the init system needs a separate call."""

    # -- helpers ---------------------------------------------------------

    async def _run(self, *argv: str, timeout: Optional[float] = None) -> CommandResult:
        return await self._runner.run(argv, timeout=timeout)

    def _classify(self, result: CommandResult, name: str) -> QtoolsError:
        """Translate a failed init-system call into the error taxonomy."""
        stderr = result.stderr.strip()
        lowered = stderr.lower()
        if result.timed_out:
            return OperationTimeoutError(f"{result.command} timed out", target=name)
        if result.exit_code == EXIT_NOT_FOUND:
            return PlatformUnsupportedError(
                f"{result.argv[0]} is not available on this host", target=name
            )
        if result.exit_code == EXIT_CANNOT_EXECUTE or any(
            marker in lowered
            for marker in (
                "access denied",
                "permission denied",
                "operation not permitted",
                "interactive authentication required",
                "a password is required",
            )
        ):
            return PermissionDeniedError(f"Permission denied for {name}: {stderr}", target=name)
        if any(marker in lowered for marker in ("not found", "not loaded", "could not find")):
            return ServiceNotFoundError(f"Service {name} not found: {stderr}", target=name)
        return CommandFailedError(
            f"{result.command} failed (rc={result.exit_code}): {stderr}", target=name
        )


__all__ = ["DEFINITION_MODE", "ServiceBackend", "atomic_write"]
