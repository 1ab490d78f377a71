"""Configuration for the qtools orchestration engine.

Three layers:

- ``Settings``: process-level knobs read from ``QTOOLS_*`` environment
  variables (and an optional ``.env``) via pydantic-settings.
- ``NodeConfig``: the operator's YAML node configuration (service flags,
  worker cores, cluster servers).
- ``ServiceConstants`` / ``ServiceOptions``: immutable values threaded
  through constructors into descriptor generation.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cluster.types import ClusterServer
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / "qtools" / "config.yml"


class Settings(BaseSettings):
    """Process-level settings, overridable per environment."""

    model_config = SettingsConfigDict(env_prefix="QTOOLS_", env_file=".env", extra="ignore")

    config_file: Path = DEFAULT_CONFIG_FILE
    log_level: str = "INFO"
    log_json: bool = False

    # Timeouts (seconds)
    command_timeout: float = 30.0
    ssh_timeout: float = 20.0
    probe_timeout: float = 10.0

    use_sudo: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings for the current process."""

    return Settings()  # type: ignore[arg-type]


class ServiceConstants(BaseModel):
    """Defaults for generated service definitions."""

    model_config = ConfigDict(frozen=True)

    user: str = "quilibrium"
    group: str = "quilibrium"
    node_dir: Path = Path("/home/quilibrium/ceremonyclient/node")
    binary_name: str = "node"
    log_dir: Path = Path("/var/log/quilibrium")

    master_service_name: str = "ceremonyclient"
    worker_service_prefix: str = "ceremonyclient-worker"

    systemd_unit_dir: Path = Path("/etc/systemd/system")
    launchd_dir: Path = Path("/Library/LaunchDaemons")
    launchd_label_prefix: str = "com.quilibrium"

    worker_base_p2p_port: int = 50000
    worker_base_stream_port: int = 60000

    stop_grace_seconds: float = 30.0
    force_stop_timeout: float = 5.0

    @property
    def binary_path(self) -> Path:
        return self.node_dir / self.binary_name


class ServiceOptions(BaseModel):
    """Every flag that affects a generated service definition.

    Unset fields take the documented defaults below, so two options built
    from the same input always render identical definitions.
    """

    model_config = ConfigDict(frozen=True)

    network: Literal["mainnet", "testnet"] = "mainnet"
    debug: bool = False
    skip_signature_check: bool = False
    master_restart_delay: float = Field(default=5.0, ge=0)
    worker_restart_delay: float = Field(default=5.0, ge=0)
    enable: bool = True
    auto_restart: bool = True
    environment: Dict[str, str] = Field(default_factory=dict)


class ServiceSection(BaseModel):
    """``service:`` block of the node YAML."""

    user: Optional[str] = None
    group: Optional[str] = None
    node_dir: Optional[Path] = None
    binary_name: Optional[str] = None

    network: Literal["mainnet", "testnet"] = "mainnet"
    debug: bool = False
    skip_signature_check: bool = False
    restart_delay: Optional[float] = Field(default=None, ge=0)
    worker_restart_delay: Optional[float] = Field(default=None, ge=0)
    enable: bool = True
    auto_restart: bool = True
    environment: Dict[str, str] = Field(default_factory=dict)

    worker_cores: str = ""
    worker_base_p2p_port: Optional[int] = None
    worker_base_stream_port: Optional[int] = None


class ClusterSection(BaseModel):
    """``cluster:`` block of the node YAML."""

    enabled: bool = False
    default_user: str = "quilibrium"
    ssh_key: Optional[Path] = None
    default_worker_count: int = Field(default=0, ge=0)
    servers: List[ClusterServer] = Field(default_factory=list)


class NodeConfig(BaseModel):
    """Resolved node configuration, read-only for the engine."""

    service: ServiceSection = Field(default_factory=ServiceSection)
    cluster: ClusterSection = Field(default_factory=ClusterSection)

    def service_options(self) -> ServiceOptions:
        """Build the immutable ServiceOptions, filling unset delays with defaults."""
        defaults = ServiceOptions()
        svc = self.service
        return ServiceOptions(
            network=svc.network,
            debug=svc.debug,
            skip_signature_check=svc.skip_signature_check,
            master_restart_delay=(
                svc.restart_delay if svc.restart_delay is not None else defaults.master_restart_delay
            ),
            worker_restart_delay=(
                svc.worker_restart_delay
                if svc.worker_restart_delay is not None
                else defaults.worker_restart_delay
            ),
            enable=svc.enable,
            auto_restart=svc.auto_restart,
            environment=dict(svc.environment),
        )

    def service_constants(self, base: Optional[ServiceConstants] = None) -> ServiceConstants:
        """Overlay configured paths/identity onto the constants."""
        base = base or ServiceConstants()
        updates = {
            name: resolve(name, self.service, base)
            for name in (
                "user",
                "group",
                "node_dir",
                "binary_name",
                "worker_base_p2p_port",
                "worker_base_stream_port",
            )
        }
        return base.model_copy(update=updates)

    def cluster_servers(self) -> List[ClusterServer]:
        """Servers with cluster-wide SSH defaults applied."""
        servers = []
        for server in self.cluster.servers:
            updates: Dict[str, Any] = {}
            if server.ssh_key is None and self.cluster.ssh_key is not None:
                updates["ssh_key"] = self.cluster.ssh_key
            if "user" not in server.model_fields_set:
                updates["user"] = self.cluster.default_user
            servers.append(server.model_copy(update=updates) if updates else server)
        return servers


def resolve(field: str, config: Any, constants: ServiceConstants) -> Any:
    """Return ``config.<field>`` when set, else ``constants.<field>``.

    A value counts as set when it is neither ``None`` nor an empty string.
    """
    if field not in type(constants).model_fields:
        raise KeyError(field)
    value = getattr(config, field, None) if config is not None else None
    if value is None or value == "":
        return getattr(constants, field)
    return value


def load_node_config(path: Optional[Path] = None) -> NodeConfig:
    """Load the node YAML, returning defaults when the file does not exist."""
    path = Path(path) if path else get_settings().config_file
    if not path.exists():
        logger.warning(f"Config file not found at {path}, using defaults")
        return NodeConfig()

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}", target=str(path))

    try:
        return NodeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}", target=str(path)) from e


__all__ = [
    "ClusterSection",
    "NodeConfig",
    "ServiceConstants",
    "ServiceOptions",
    "ServiceSection",
    "Settings",
    "get_settings",
    "load_node_config",
    "resolve",
]
