"""WorkerManager for qtools.

Owns the core -> worker service mapping of one host and runs bulk lifecycle
operations over the master and its workers. Every worker is its own service
unit, so operating on one worker never touches another.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import ServiceConstants, ServiceOptions
from ..errors import (
    AlreadyStoppedError,
    ErrorCode,
    InformationalError,
    NotConfiguredError,
    PlatformUnsupportedError,
    QtoolsError,
)
from .backend import ServiceBackend
from .descriptors import DescriptorFactory
from .types import AggregateResult, FleetStatus, ItemOutcome, ServiceDescriptor, ServiceStatus

logger = logging.getLogger(__name__)


class WorkerManager:
    """Lifecycle orchestration for one node's master and worker fleet.

    Ordering rules:
    - start: master first; workers only if the master started
    - stop: workers first, then master (unless forced)

    Calls against different services run concurrently; calls against the
    same service are serialized by a per-name lock.
    """

    def __init__(
        self,
        backend: ServiceBackend,
        options: ServiceOptions,
        cores: Iterable[int],
        constants: Optional[ServiceConstants] = None,
        call_timeout: float = 30.0,
    ):
        """Initialize the WorkerManager.

        Args:
            backend: Selected service backend.
            options: Flags for generated definitions.
            cores: Configured worker core indices, in display order.
            constants: Service constants (defaults to the backend's).
            call_timeout: Upper bound for each individual backend call.
        """
        self._backend = backend
        self._factory = DescriptorFactory(options, constants or backend.constants)
        self._call_timeout = call_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._workers: Dict[int, str] = {}
        self._set_cores(cores)

        logger.info(
            f"WorkerManager initialized with {len(self._workers)} workers "
            f"on {backend.platform or type(backend).__name__}"
        )

    def _set_cores(self, cores: Iterable[int]) -> None:
        self._workers = {}
        for core in cores:
            if core not in self._workers:
                self._workers[core] = self._factory.worker_name(core)

    def _get_lock(self, service_name: str) -> asyncio.Lock:
        """Get or create a lock for a service."""
        if service_name not in self._locks:
            self._locks[service_name] = asyncio.Lock()
        return self._locks[service_name]

    # -- introspection ---------------------------------------------------

    @property
    def cores(self) -> List[int]:
        return list(self._workers)

    @property
    def master_name(self) -> str:
        return self._factory.master_name

    def worker_name(self, core: int) -> Optional[str]:
        return self._workers.get(core)

    def master_descriptor(self) -> ServiceDescriptor:
        return self._factory.master()

    def worker_descriptor(self, core: int) -> ServiceDescriptor:
        return self._factory.worker(core)

    def worker_ports(self, core: int) -> Tuple[int, int]:
        """Expected (p2p, stream) ports for the worker on ``core``, for display."""
        return self._factory.worker_ports(core)

    def descriptors(self) -> List[ServiceDescriptor]:
        """Master plus all configured workers, regenerated on each call."""
        return [self._factory.master(), *self._factory.workers(self.cores)]

    # -- item execution --------------------------------------------------

    async def _call(
        self,
        name: str,
        core: Optional[int],
        action: Callable[[], Awaitable[None]],
        timeout: Optional[float] = None,
    ) -> ItemOutcome:
        """Run one backend action under the service lock and capture its outcome."""
        timeout = timeout if timeout is not None else self._call_timeout
        try:
            async with self._get_lock(name):
                await asyncio.wait_for(action(), timeout=timeout)
            return ItemOutcome(target=name, core=core, ok=True)
        except InformationalError as e:
            logger.info(f"{name}: {e}")
            return ItemOutcome(target=name, core=core, ok=True, detail=str(e))
        except PlatformUnsupportedError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"{name}: backend call exceeded {timeout}s")
            return ItemOutcome(
                target=name,
                core=core,
                ok=False,
                error_code=ErrorCode.TIMEOUT,
                detail=f"Timed out after {timeout}s",
            )
        except QtoolsError as e:
            logger.warning(f"{name}: {e.code.value}: {e}")
            return ItemOutcome(target=name, core=core, ok=False, error_code=e.code, detail=str(e))

    def _not_configured(self, core: int) -> ItemOutcome:
        error = NotConfiguredError(f"No worker configured for core {core}", target=f"core-{core}")
        logger.warning(str(error))
        return ItemOutcome(
            target=error.target, core=core, ok=False, error_code=error.code, detail=str(error)
        )

    async def _each_worker(
        self,
        cores: Sequence[int],
        make_action: Callable[[str], Callable[[], Awaitable[None]]],
        timeout: Optional[float] = None,
    ) -> List[ItemOutcome]:
        """Run an action on each requested worker concurrently, keeping request order."""

        async def one(core: int) -> ItemOutcome:
            name = self._workers.get(core)
            if name is None:
                return self._not_configured(core)
            return await self._call(name, core, make_action(name), timeout=timeout)

        return list(await asyncio.gather(*(one(core) for core in cores)))

    def _stop_timeout(self, grace: float) -> float:
        return grace + self._backend.constants.force_stop_timeout + self._call_timeout

    # -- start -----------------------------------------------------------

    async def start_master(self) -> ItemOutcome:
        name = self.master_name
        return await self._call(name, None, lambda: self._backend.start(name))

    async def start_all(self) -> AggregateResult:
        """Start the master, then every configured worker.

        If the master fails to start no worker is attempted.
        """
        result = AggregateResult(operation="start")
        master = await self.start_master()
        result.add(master)
        if not master.ok:
            logger.error(f"Master {self.master_name} failed to start; skipping workers")
            return result

        result.extend(await self.start_subset(self.cores))
        return result

    async def start_subset(self, cores: Sequence[int]) -> AggregateResult:
        """Start only the named workers; the master is not touched."""
        logger.info(f"Starting {len(cores)} workers")
        outcomes = await self._each_worker(
            cores, lambda name: (lambda: self._backend.start(name))
        )
        return AggregateResult(operation="start_workers", outcomes=outcomes)

    # -- stop ------------------------------------------------------------

    async def stop_master(self, force: bool = False) -> ItemOutcome:
        name = self.master_name
        constants = self._backend.constants
        grace = constants.force_stop_timeout if force else constants.stop_grace_seconds
        return await self._call(
            name,
            None,
            lambda: self._backend.stop(name, force=force, grace=grace),
            timeout=self._stop_timeout(grace),
        )

    async def stop_all(self, force: bool = False) -> AggregateResult:
        """Stop every worker, then the master.

        With ``force`` all services are stopped at once with the short force
        timeout and a hard kill when they do not exit.
        """
        result = AggregateResult(operation="stop")
        if force:
            master, workers = await asyncio.gather(
                self.stop_master(force=True),
                self.stop_subset(self.cores, force=True),
            )
            result.extend(workers)
            result.add(master)
            return result

        result.extend(await self.stop_subset(self.cores))
        result.add(await self.stop_master())
        return result

    async def stop_subset(self, cores: Sequence[int], force: bool = False) -> AggregateResult:
        """Stop only the named workers."""
        constants = self._backend.constants
        grace = constants.force_stop_timeout if force else constants.stop_grace_seconds
        logger.info(f"Stopping {len(cores)} workers (force={force})")
        outcomes = await self._each_worker(
            cores,
            lambda name: (lambda: self._backend.stop(name, force=force, grace=grace)),
            timeout=self._stop_timeout(grace),
        )
        return AggregateResult(operation="stop_workers", outcomes=outcomes)

    # -- restart ---------------------------------------------------------

    async def restart_all(self) -> AggregateResult:
        """Restart the master, then each worker independently."""
        result = AggregateResult(operation="restart")
        name = self.master_name
        master = await self._call(
            name,
            None,
            lambda: self._backend.restart(name),
            timeout=self._stop_timeout(self._backend.constants.stop_grace_seconds),
        )
        result.add(master)
        if not master.ok:
            logger.error(f"Master {name} failed to restart; skipping workers")
            return result
        result.extend(await self.restart_subset(self.cores))
        return result

    async def restart_subset(self, cores: Sequence[int]) -> AggregateResult:
        """Restart only the named workers, one service unit each."""
        outcomes = await self._each_worker(
            cores,
            lambda name: (lambda: self._backend.restart(name)),
            timeout=self._stop_timeout(self._backend.constants.stop_grace_seconds),
        )
        return AggregateResult(operation="restart_workers", outcomes=outcomes)

    # -- status ----------------------------------------------------------

    async def _status_one(self, name: str) -> ServiceStatus:
        try:
            return await asyncio.wait_for(self._backend.status(name), timeout=self._call_timeout)
        except PlatformUnsupportedError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Status of {name} timed out")
            return ServiceStatus.unknown(name, detail=f"Status timed out after {self._call_timeout}s")
        except QtoolsError as e:
            logger.warning(f"Status of {name} failed: {e}")
            return ServiceStatus.unknown(name, detail=f"{e.code.value}: {e}")

    async def status(self) -> FleetStatus:
        """Fresh status of the master and every configured worker.

        A failing backend call yields an ``unknown`` entry; the scan continues.
        """
        cores = self.cores
        master, *workers = await asyncio.gather(
            self._status_one(self.master_name),
            *(self._status_one(self._workers[core]) for core in cores),
        )
        return FleetStatus(master=master, workers=dict(zip(cores, workers)))

    # -- definitions -----------------------------------------------------

    async def _install_one(self, descriptor: ServiceDescriptor) -> None:
        await self._backend.write_definition(descriptor)

    async def install(self) -> AggregateResult:
        """Regenerate and rewrite every service definition, then reload.

        Definitions are always fully rewritten from the current options.
        """
        result = AggregateResult(operation="install")
        descriptors = self.descriptors()
        outcomes = await asyncio.gather(
            *(
                self._call(d.name, d.core, lambda d=d: self._install_one(d))
                for d in descriptors
            )
        )
        reload_outcome = await self._call("daemon-reload", None, self._backend.reload)
        if not reload_outcome.ok:
            result.outcomes.extend(outcomes)
            result.add(reload_outcome)
            return result

        enabled = self._factory.options.enable
        for descriptor, outcome in zip(descriptors, outcomes):
            if outcome.ok:
                outcome = await self._call(
                    descriptor.name,
                    descriptor.core,
                    lambda d=descriptor: self._backend.set_enabled(d.name, enabled),
                )
            result.add(outcome)
        return result

    async def reconfigure(self, cores: Iterable[int], prune: bool = False) -> AggregateResult:
        """Replace the configured core set.

        Workers for cores that are no longer configured are left alone unless
        ``prune`` is set, in which case they are stopped and their
        definitions removed.
        """
        previous = dict(self._workers)
        self._set_cores(cores)
        removed = [core for core in previous if core not in self._workers]
        result = AggregateResult(operation="reconfigure")

        if not removed:
            return result
        if not prune:
            logger.warning(
                f"Cores {removed} are no longer configured; their services were left in place"
            )
            return result

        async def prune_one(core: int) -> ItemOutcome:
            name = previous[core]

            async def action() -> None:
                try:
                    await self._backend.stop(name)
                except AlreadyStoppedError:
                    pass
                await self._backend.remove_definition(name)

            return await self._call(
                name,
                core,
                action,
                timeout=self._stop_timeout(self._backend.constants.stop_grace_seconds),
            )

        for outcome in await asyncio.gather(*(prune_one(core) for core in removed)):
            result.add(outcome)
        return result
