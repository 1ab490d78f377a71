"""Descriptor generation for master and worker services.

Descriptors are pure functions of ServiceOptions + ServiceConstants (+ core
index), so regenerating from identical inputs yields identical definitions.
"""

from typing import List, Optional, Sequence

from ..config import ServiceConstants, ServiceOptions
from .types import ServiceDescriptor, ServiceRole


class DescriptorFactory:
    """Builds ServiceDescriptors for one node."""

    def __init__(self, options: ServiceOptions, constants: Optional[ServiceConstants] = None):
        self.options = options
        self.constants = constants or ServiceConstants()

    @property
    def master_name(self) -> str:
        return self.constants.master_service_name

    def worker_name(self, core: int) -> str:
        return f"{self.constants.worker_service_prefix}-{core}"

    def _environment(self) -> tuple:
        return tuple(sorted(self.options.environment.items()))

    def _master_arguments(self) -> List[str]:
        args: List[str] = []
        if self.options.network == "testnet":
            args.extend(["--network", "1"])
        if self.options.debug:
            args.append("--debug")
        if self.options.skip_signature_check:
            args.append("--signature-check=false")
        return args

    def master(self) -> ServiceDescriptor:
        c = self.constants
        return ServiceDescriptor(
            name=self.master_name,
            role=ServiceRole.MASTER,
            executable=c.binary_path,
            arguments=tuple(self._master_arguments()),
            working_directory=c.node_dir,
            user=c.user,
            group=c.group,
            environment=self._environment(),
            restart=self.options.auto_restart,
            restart_delay_seconds=self.options.master_restart_delay,
            enable=self.options.enable,
            log_path=c.log_dir / f"{self.master_name}.log",
            description="Quilibrium node master",
        )

    def worker(self, core: int) -> ServiceDescriptor:
        c = self.constants
        args = ["--core", str(core)]
        if self.options.network == "testnet":
            args.extend(["--network", "1"])
        if self.options.skip_signature_check:
            args.append("--signature-check=false")
        name = self.worker_name(core)
        return ServiceDescriptor(
            name=name,
            role=ServiceRole.WORKER,
            core=core,
            executable=c.binary_path,
            arguments=tuple(args),
            working_directory=c.node_dir,
            user=c.user,
            group=c.group,
            environment=self._environment(),
            restart=self.options.auto_restart,
            restart_delay_seconds=self.options.worker_restart_delay,
            enable=self.options.enable,
            log_path=c.log_dir / f"{name}.log",
            description=f"Quilibrium node worker (core {core})",
        )

    def worker_ports(self, core: int) -> tuple:
        """(p2p, stream) ports a worker on ``core`` is expected to listen on.

        The node binary derives these itself from its own base-port settings
        plus the ``--core`` index; they are not written into the definition.
        Used for status display only.
        """
        return (
            self.constants.worker_base_p2p_port + core,
            self.constants.worker_base_stream_port + core,
        )

    def workers(self, cores: Sequence[int]) -> List[ServiceDescriptor]:
        return [self.worker(core) for core in cores]
