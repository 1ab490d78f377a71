"""Tests for WorkerManager fleet lifecycle."""

import asyncio

import pytest

from qtools.config import ServiceOptions
from qtools.errors import (
    CommandFailedError,
    ErrorCode,
    PermissionDeniedError,
    PlatformUnsupportedError,
    ServiceNotFoundError,
)
from qtools.service_manager.types import ServiceRole, ServiceState
from qtools.service_manager.workers import WorkerManager

MASTER = "ceremonyclient"


def worker(core: int) -> str:
    return f"ceremonyclient-worker-{core}"


@pytest.fixture
def manager(backend, options) -> WorkerManager:
    return WorkerManager(backend, options, cores=[1, 2, 3], call_timeout=1.0)


class TestStart:
    """Test suite for start operations."""

    @pytest.mark.asyncio
    async def test_start_all_master_first(self, manager, backend):
        result = await manager.start_all()

        assert result.ok
        assert [o.target for o in result.outcomes] == [MASTER, worker(1), worker(2), worker(3)]
        starts = backend.calls_for("start")
        assert starts[0] == MASTER
        assert sorted(starts[1:]) == [worker(1), worker(2), worker(3)]

    @pytest.mark.asyncio
    async def test_master_failure_skips_workers(self, manager, backend):
        """Test a failing master start reports zero worker attempts."""
        backend.fail("start", MASTER, PermissionDeniedError("access denied", target=MASTER))

        result = await manager.start_all()

        assert not result.ok
        assert len(result.outcomes) == 1
        assert result.outcomes[0].error_code == ErrorCode.PERMISSION_DENIED
        assert backend.calls_for("start") == [MASTER]

    @pytest.mark.asyncio
    async def test_worker_failure_isolated(self, manager, backend):
        backend.fail("start", worker(2), ServiceNotFoundError("no unit", target=worker(2)))

        result = await manager.start_all()

        assert not result.ok
        assert result.for_target(worker(1)).ok
        assert result.for_target(worker(3)).ok
        failed = result.for_target(worker(2))
        assert failed.error_code == ErrorCode.NOT_FOUND
        assert result.summary() == {"total": 4, "succeeded": 3, "failed": 1}

    @pytest.mark.asyncio
    async def test_start_twice_is_success(self, manager, backend):
        """Test repeated start reports success with an informational detail."""
        await manager.start_all()
        result = await manager.start_all()

        assert result.ok
        assert all("already running" in o.detail for o in result.outcomes)
        assert backend.states[worker(1)] == ServiceState.RUNNING

    @pytest.mark.asyncio
    async def test_start_subset_leaves_master(self, manager, backend):
        result = await manager.start_subset([3, 1])

        assert result.ok
        assert [o.core for o in result.outcomes] == [3, 1]
        assert MASTER not in backend.calls_for("start")

    @pytest.mark.asyncio
    async def test_unknown_core_not_configured(self, manager, backend):
        result = await manager.start_subset([1, 9, 2])

        assert not result.ok
        missing = result.outcomes[1]
        assert missing.target == "core-9"
        assert missing.error_code == ErrorCode.NOT_CONFIGURED
        assert result.outcomes[0].ok and result.outcomes[2].ok
        assert sorted(backend.calls_for("start")) == [worker(1), worker(2)]

    @pytest.mark.asyncio
    async def test_platform_unsupported_is_fatal(self, manager, backend):
        backend.fail("start", MASTER, PlatformUnsupportedError("no init system"))
        with pytest.raises(PlatformUnsupportedError):
            await manager.start_all()

    @pytest.mark.asyncio
    async def test_workers_start_concurrently(self, backend, options):
        for core in range(1, 5):
            backend.delays[worker(core)] = 0.3
        manager = WorkerManager(backend, options, cores=[1, 2, 3, 4], call_timeout=5.0)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await manager.start_subset([1, 2, 3, 4])

        assert result.ok
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_same_service_serialized(self, manager, backend):
        """Test concurrent calls against one service never overlap."""
        backend.delays[worker(1)] = 0.1

        first, second = await asyncio.gather(
            manager.start_subset([1]), manager.start_subset([1])
        )

        assert first.ok and second.ok
        assert backend.max_in_flight[worker(1)] == 1
        details = [first.outcomes[0].detail, second.outcomes[0].detail]
        assert sum(1 for d in details if d and "already running" in d) == 1

    @pytest.mark.asyncio
    async def test_call_timeout(self, backend, options):
        backend.delays[worker(2)] = 1.0
        manager = WorkerManager(backend, options, cores=[1, 2], call_timeout=0.1)

        result = await manager.start_subset([1, 2])

        assert result.for_target(worker(1)).ok
        assert result.for_target(worker(2)).error_code == ErrorCode.TIMEOUT


class TestStop:
    """Test suite for stop operations."""

    @pytest.mark.asyncio
    async def test_stop_all_workers_first(self, manager, backend):
        await manager.start_all()
        backend.calls.clear()

        result = await manager.stop_all()

        assert result.ok
        stops = backend.calls_for("stop")
        assert stops[-1] == MASTER
        assert sorted(stops[:-1]) == [worker(1), worker(2), worker(3)]
        assert result.outcomes[-1].target == MASTER

    @pytest.mark.asyncio
    async def test_stop_stopped_is_success(self, manager):
        result = await manager.stop_all()
        assert result.ok
        assert all("already stopped" in o.detail for o in result.outcomes)

    @pytest.mark.asyncio
    async def test_force_stop_all(self, manager, backend):
        await manager.start_all()

        result = await manager.stop_all(force=True)

        assert result.ok
        assert len(result.outcomes) == 4
        assert all(backend.forced[name] for name in [MASTER, worker(1), worker(2), worker(3)])
        assert all(state == ServiceState.STOPPED for state in backend.states.values())

    @pytest.mark.asyncio
    async def test_stop_subset(self, manager, backend):
        await manager.start_all()

        result = await manager.stop_subset([2])

        assert result.ok
        assert backend.states[worker(2)] == ServiceState.STOPPED
        assert backend.states[worker(1)] == ServiceState.RUNNING
        assert backend.states[MASTER] == ServiceState.RUNNING


class TestRestart:
    """Test suite for restart operations."""

    @pytest.mark.asyncio
    async def test_restart_subset_touches_only_named(self, manager, backend):
        await manager.start_all()
        backend.calls.clear()

        result = await manager.restart_subset([2])

        assert result.ok
        assert {name for _, name in backend.calls} == {worker(2)}
        assert backend.states[worker(2)] == ServiceState.RUNNING

    @pytest.mark.asyncio
    async def test_restart_surfaces_start_failure(self, manager, backend):
        await manager.start_all()
        backend.fail("start", worker(1), CommandFailedError("exec format error"))

        result = await manager.restart_subset([1])

        assert not result.ok
        assert result.outcomes[0].error_code == ErrorCode.COMMAND_FAILED

    @pytest.mark.asyncio
    async def test_restart_all(self, manager, backend):
        result = await manager.restart_all()
        assert result.ok
        assert backend.calls_for("start")[0] == MASTER


class TestStatus:
    """Test suite for status aggregation."""

    @pytest.mark.asyncio
    async def test_status_fleet(self, manager, backend):
        await manager.start_subset([1])

        fleet = await manager.status()

        assert fleet.master.state == ServiceState.STOPPED
        assert list(fleet.workers) == [1, 2, 3]
        assert fleet.workers[1].is_running
        assert fleet.summary() == {"running": 1, "stopped": 3, "unknown": 0}

    @pytest.mark.asyncio
    async def test_status_tolerates_failures(self, manager, backend):
        """Test one failing backend call yields unknown for that worker only."""
        backend.fail("status", worker(2), CommandFailedError("dbus timeout"))

        fleet = await manager.status()

        assert fleet.workers[2].state == ServiceState.UNKNOWN
        assert "dbus timeout" in fleet.workers[2].detail
        assert fleet.workers[1].state == ServiceState.STOPPED
        assert fleet.workers[3].state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_status_timeout_is_unknown(self, backend, options):
        backend.delays[MASTER] = 1.0
        manager = WorkerManager(backend, options, cores=[1], call_timeout=0.1)

        fleet = await manager.status()

        assert fleet.master.state == ServiceState.UNKNOWN
        assert fleet.workers[1].state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_status_to_dict(self, manager):
        data = (await manager.status()).to_dict()
        assert data["master"]["name"] == MASTER
        assert set(data["workers"]) == {"1", "2", "3"}
        assert data["workers"]["1"]["state"] == "stopped"


class TestDefinitions:
    """Test suite for install and reconfiguration."""

    @pytest.mark.asyncio
    async def test_install_writes_then_reloads(self, manager, backend):
        result = await manager.install()

        assert result.ok
        assert set(backend.definitions) == {MASTER, worker(1), worker(2), worker(3)}
        actions = [action for action, _ in backend.calls]
        last_write = max(i for i, a in enumerate(actions) if a == "write")
        assert actions.index("reload") > last_write
        assert sorted(backend.calls_for("enable")) == sorted([MASTER, worker(1), worker(2), worker(3)])

    @pytest.mark.asyncio
    async def test_install_disabled(self, backend):
        manager = WorkerManager(backend, ServiceOptions(enable=False), cores=[1])
        await manager.install()
        assert backend.calls_for("disable") == [MASTER, worker(1)]

    @pytest.mark.asyncio
    async def test_install_write_failure(self, manager, backend):
        backend.fail("write", worker(3), PermissionDeniedError("read-only filesystem"))

        result = await manager.install()

        assert not result.ok
        assert result.for_target(worker(3)).error_code == ErrorCode.PERMISSION_DENIED
        assert worker(3) not in backend.calls_for("enable")
        assert result.for_target(worker(1)).ok

    @pytest.mark.asyncio
    async def test_reconfigure_is_non_destructive(self, manager, backend):
        await manager.start_all()
        backend.calls.clear()

        result = await manager.reconfigure([1, 2])

        assert result.outcomes == []
        assert manager.cores == [1, 2]
        assert backend.calls == []
        assert backend.states[worker(3)] == ServiceState.RUNNING
        assert (await manager.start_subset([3])).outcomes[0].error_code == ErrorCode.NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_reconfigure_prune(self, manager, backend):
        await manager.install()
        await manager.start_all()

        result = await manager.reconfigure([1], prune=True)

        assert result.ok
        assert sorted(o.target for o in result.outcomes) == [worker(2), worker(3)]
        assert backend.states[worker(2)] == ServiceState.STOPPED
        assert set(backend.definitions) == {MASTER, worker(1)}

    @pytest.mark.asyncio
    async def test_reconfigure_grow(self, manager):
        await manager.reconfigure([1, 2, 3, 4])
        assert manager.worker_name(4) == worker(4)


class TestDescriptors:
    """Test suite for generated descriptors."""

    def test_descriptors_regenerated(self, manager):
        descriptors = manager.descriptors()
        assert descriptors[0].role == ServiceRole.MASTER
        assert [d.core for d in descriptors[1:]] == [1, 2, 3]
        assert manager.descriptors() == descriptors

    def test_worker_arguments(self, backend):
        manager = WorkerManager(
            backend,
            ServiceOptions(network="testnet", skip_signature_check=True),
            cores=[7],
        )
        assert manager.worker_descriptor(7).arguments == (
            "--core",
            "7",
            "--network",
            "1",
            "--signature-check=false",
        )

    def test_worker_ports(self, manager):
        """Test expected ports are display-only and never reach the definition."""
        assert manager.worker_ports(3) == (50003, 60003)
        assert manager.worker_descriptor(3).command[1:] == ["--core", "3"]
