"""Host platform detection and one-time backend selection."""

import logging
import platform as _platform
import shutil
from pathlib import Path
from typing import Callable, Optional

from ..config import ServiceConstants
from ..errors import PlatformUnsupportedError
from ..process import ProcessRunner
from .backend import ServiceBackend
from .launchd import LaunchdBackend
from .systemd import SystemdBackend

logger = logging.getLogger(__name__)

SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")


def detect_platform(
    system: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    systemd_runtime_dir: Path = SYSTEMD_RUNTIME_DIR,
) -> Optional[str]:
    """Return ``"systemd"``, ``"launchd"`` or None for this host."""
    system = system or _platform.system()
    if system == "Linux":
        # systemctl can be installed on hosts where systemd is not PID 1
        if which("systemctl") and systemd_runtime_dir.is_dir():
            return SystemdBackend.platform
        return None
    if system == "Darwin" and which("launchctl"):
        return LaunchdBackend.platform
    return None


def select_backend(
    runner: Optional[ProcessRunner] = None,
    constants: Optional[ServiceConstants] = None,
    platform_name: Optional[str] = None,
    definition_dir: Optional[Path] = None,
) -> ServiceBackend:
    """Instantiate the backend for this host, failing fast when there is none."""
    name = platform_name or detect_platform()
    if name == SystemdBackend.platform:
        backend_cls = SystemdBackend
    elif name == LaunchdBackend.platform:
        backend_cls = LaunchdBackend
    else:
        raise PlatformUnsupportedError(
            f"No service backend for this host ({_platform.system()}); "
            "systemd or launchd is required"
        )

    logger.info(f"Selected {name} service backend")
    return backend_cls(runner=runner, constants=constants, definition_dir=definition_dir)


# Selected once per process
_backend: Optional[ServiceBackend] = None


def get_backend(
    runner: Optional[ProcessRunner] = None,
    constants: Optional[ServiceConstants] = None,
) -> ServiceBackend:
    """Get the process-wide backend, selecting it on first use."""
    global _backend
    if _backend is None:
        _backend = select_backend(runner=runner, constants=constants)
    return _backend


def reset_backend() -> None:
    """Forget the selected backend (for testing)."""
    global _backend
    _backend = None
